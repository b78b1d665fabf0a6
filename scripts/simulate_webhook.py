"""Post a signed sample webhook into a running webhook-receiver.

Usage:
  python scripts/simulate_webhook.py [platform] [--url http://localhost:8000]

The secret is read from {PLATFORM}_WEBHOOK_SECRET (default dev_secret).
Exits 0 when the receiver answers 200, non-zero otherwise.
"""
import argparse
import hashlib
import hmac
import json
import os
import sys
import time

import httpx


def sample(platform: str) -> dict:
    now = int(time.time())
    if platform == "whatsapp":
        return {"entry": [{"changes": [{"value": {
            "metadata": {"phone_number_id": "000000000000"},
            "messages": [{"from": "5730000000", "id": f"wamid.sim{now}", "timestamp": str(now),
                          "type": "text", "text": {"body": "hola desde simulate_webhook"}}],
        }}]}]}
    if platform in ("messenger", "instagram"):
        return {"entry": [{"messaging": [{"sender": {"id": "user-1"}, "recipient": {"id": "page-1"},
                                          "timestamp": now * 1000,
                                          "message": {"mid": f"m_{now}", "text": "hello"}}]}]}
    if platform == "telegram":
        return {"update_id": now, "message": {"message_id": 1, "from": {"id": 123}, "chat": {"id": 123},
                                              "date": now, "text": "hello"}}
    if platform == "mailchimp":
        return {"type": "subscribe", "fired_at": time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(now)),
                "data": {"email": "someone@example.com", "list_id": "list-1"}}
    if platform == "tawkto":
        stamp = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(now))
        return {"event": "chat:message", "timestamp": stamp,
                "visitor": {"id": "visitor-1", "name": "Simulated Visitor"},
                "chat": {"id": f"chat-{now}", "messages": [
                    {"id": f"tawk-{now}", "type": "text", "content": "hola desde tawk.to",
                     "sender": "visitor", "timestamp": stamp}]}}
    return {"message_id": f"wc-{now}", "user_id": "visitor-1", "session_id": "session-1",
            "text": "hello", "timestamp": now}


def signed_headers(body: bytes, secret: str) -> dict:
    """Headers carrying the HMAC signature under every name a receiver checks."""
    sig = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return {"Content-Type": "application/json", "X-Hub-Signature-256": sig,
            "X-Mailchimp-Signature": sig, "X-Tawk-Signature": sig, "X-Webchat-Signature": sig,
            "X-Telegram-Bot-Api-Secret-Token": secret}


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("platform", nargs="?", default="whatsapp")
    parser.add_argument("--url", default=os.getenv("WEBHOOK_RECEIVER_URL", "http://localhost:8000"))
    args = parser.parse_args()

    body = json.dumps(sample(args.platform)).encode()
    secret = os.getenv(f"{args.platform.upper()}_WEBHOOK_SECRET", "dev_secret")
    r = httpx.post(f"{args.url.rstrip('/')}/webhooks/{args.platform}", content=body,
                   headers=signed_headers(body, secret), timeout=10)
    print(r.status_code)
    print(r.text)
    sys.exit(0 if r.status_code == 200 else 1)


if __name__ == "__main__":
    main()
