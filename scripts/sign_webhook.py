"""
Print the X-Hub-Signature-256 header Meta would send for a payload file,
plus a ready-to-run curl command against the local webhook.

    python scripts/sign_webhook.py payload.json
    python scripts/sign_webhook.py payload.json --url https://example.com/webhooks/meta/instagram
"""

import argparse
import os

from dotenv import load_dotenv

from repdesk.services.meta_webhooks import compute_signature

def main():
    parser = argparse.ArgumentParser(description="Sign a Meta webhook payload.")
    parser.add_argument("payload", help="path to the JSON body, signed byte for byte")
    parser.add_argument("--secret", help="app secret (defaults to META_APP_SECRET)")
    parser.add_argument("--url", default="http://localhost:8000/webhooks/meta/instagram")
    args = parser.parse_args()

    load_dotenv()
    secret = args.secret or os.environ.get("META_APP_SECRET")
    if not secret:
        parser.error("no secret: pass --secret or set META_APP_SECRET")

    with open(args.payload, "rb") as f:
        body = f.read()

    signature = compute_signature(body, secret)
    print(signature)
    print(
        f"curl -X POST '{args.url}' -H 'Content-Type: application/json' "
        f"-H 'X-Hub-Signature-256: {signature}' --data-binary @{args.payload}"
    )

if __name__ == "__main__":
    main()
