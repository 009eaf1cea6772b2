#!/usr/bin/env python3
"""
Sign direct-send API requests using HMAC-SHA256.

The secret (API_TOKEN) never leaves your machine - only the signature is sent.

Usage:
    # Headers for a notification to two users
    python scripts/sign_request.py --users u1,u2 --title "Hi" --text "Hello there"

    # Extra data fields (repeatable)
    python scripts/sign_request.py --users u1 --title "Hi" --text "Hello" -d screen=inbox

    # Ready-to-run curl command
    python scripts/sign_request.py --users u1 --title "Hi" --text "Hello" --curl

    # Sign an arbitrary request (e.g. metrics)
    python scripts/sign_request.py --method GET --path /metrics --curl

Environment:
    API_TOKEN: Your API secret (required unless --token is given)
"""
import argparse
import hashlib
import hmac
import json
import os
import sys
import time

SEND_PATH = "/v1/notifications/send"


def compute_signature(secret: str, timestamp: str, method: str, path: str, body: str = "") -> str:
    """Same scheme as chatpush.transport.security.compute_request_signature."""
    body_hash = hashlib.sha256(body.encode() if body else b"").hexdigest()
    signing_string = f"{timestamp}.{method.upper()}.{path}.{body_hash}"
    return hmac.new(secret.encode(), signing_string.encode(), hashlib.sha256).hexdigest()


def build_body(users: str, title: str, text: str, data: list[str]) -> str:
    extra = {}
    for item in data:
        key, sep, value = item.partition("=")
        if not sep:
            raise SystemExit(f"Error: data field must be key=value, got {item!r}")
        extra[key] = value
    return json.dumps(
        {
            "userIds": [u.strip() for u in users.split(",") if u.strip()],
            "title": title,
            "body": text,
            "data": extra,
        },
        separators=(",", ":"),
    )


def main():
    parser = argparse.ArgumentParser(
        description="Sign chatpush API requests with HMAC-SHA256",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("--method", "-m", default="POST", help="HTTP method (default POST)")
    parser.add_argument("--path", "-p", default=SEND_PATH, help=f"Request path (default {SEND_PATH})")
    parser.add_argument("--users", "-u", help="Comma-separated recipient user ids")
    parser.add_argument("--title", default="", help="Notification title")
    parser.add_argument("--text", default="", help="Notification body")
    parser.add_argument("--data", "-d", action="append", default=[], help="Extra data key=value")
    parser.add_argument("--curl", "-c", action="store_true", help="Output as curl command")
    parser.add_argument("--host", "-H", default="http://localhost:8099", help="Host URL for curl")
    parser.add_argument("--token", "-t", help="API token (or use API_TOKEN env var)")

    args = parser.parse_args()

    token = args.token or os.environ.get("API_TOKEN")
    if not token:
        print("Error: API_TOKEN environment variable not set", file=sys.stderr)
        sys.exit(1)

    body = build_body(args.users, args.title, args.text, args.data) if args.users else ""
    timestamp = str(int(time.time()))
    signature = compute_signature(token, timestamp, args.method, args.path, body)

    if args.curl:
        cmd_parts = [
            "curl",
            f"-X {args.method.upper()}",
            f'-H "X-Timestamp: {timestamp}"',
            f'-H "X-Signature: {signature}"',
        ]
        if body:
            cmd_parts.append('-H "Content-Type: application/json"')
            cmd_parts.append(f"-d '{body}'")
        cmd_parts.append(f'"{args.host}{args.path}"')
        print(" \\\n  ".join(cmd_parts))
    else:
        print(f"X-Timestamp: {timestamp}")
        print(f"X-Signature: {signature}")
        if body:
            print(f"# Body (sign and send exactly these bytes): {body}")
        print(f"# Valid for 5 minutes from: {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(int(timestamp)))}")


if __name__ == "__main__":
    main()
