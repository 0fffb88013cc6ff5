from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request


def post_json(url: str, body: bytes) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(request, timeout=60) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def inbound_payload(shape: str, index: int) -> dict:
    phone = f"+1415555{index:04d}"[-12:]
    if shape == "vapi":
        return {
            "message": {
                "type": "end-of-call-report",
                "call": {"id": f"mock-call-{index}", "customer": {"number": phone}},
                "artifact": {
                    "transcript": (
                        "AI: Thanks for calling, how can I help?\n"
                        "User: I missed your call earlier, please call me back tomorrow."
                    ),
                },
                "analysis": {"summary": "Caller asked for a callback tomorrow."},
                "endedReason": "customer-ended-call",
            }
        }
    if shape == "twilio-sms":
        return {"From": phone, "To": "+14155550000", "Body": "Can someone call me back?"}
    return {
        "form": "contact-us",
        "name": f"Mock Lead {index}",
        "phone": phone,
        "message": "Please call me back about pricing.",
    }


def outbound_payload(call_id: str, ended_reason: str) -> dict:
    return {
        "message": {
            "type": "end-of-call-report",
            "call": {
                "id": call_id,
                "status": "ended",
                "endedReason": ended_reason,
                "startedAt": "2024-05-01T10:00:00Z",
                "endedAt": "2024-05-01T10:01:30Z",
            },
        }
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock webhook deliveries to a local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--webhook-key", required=True)
    parser.add_argument("--kind", choices=["inbound", "outbound"], default="inbound")
    parser.add_argument("--shape", choices=["vapi", "twilio-sms", "web-form"], default="vapi")
    parser.add_argument("--count", type=int, default=3)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--call-id", default=None, help="Provider call id for outbound results.")
    parser.add_argument("--ended-reason", default="customer-did-not-answer")
    args = parser.parse_args()

    base = args.base_url.rstrip("/")
    if args.kind == "outbound":
        if not args.call_id:
            parser.error("--call-id is required for outbound results")
        body = json.dumps(outbound_payload(args.call_id, args.ended_reason)).encode("utf-8")
        status_code, response = post_json(f"{base}/outbound-webhook/{args.webhook_key}", body)
        print(f"{status_code} {args.call_id} {response}")
        return 0

    endpoint = f"{base}/webhook/{args.webhook_key}"
    for index in range(args.start_index, args.start_index + args.count):
        body = json.dumps(inbound_payload(args.shape, index), separators=(",", ":")).encode("utf-8")
        status_code, response = post_json(endpoint, body)
        print(f"{status_code} {args.shape}#{index} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
