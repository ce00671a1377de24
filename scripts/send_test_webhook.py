"""Sign and POST a sample provider webhook to a running gateway.

Useful for replay/idempotency checks: send the same event twice and inspect
`GET /payments/{order_id}`.
"""

import argparse
import hashlib
import hmac
import json
import time

import httpx


def sample_payment_event(event: str, order_id: str, payment_id: str, amount: int) -> dict:
    """Minimal payment-provider envelope for one of the reconciled event types."""

    status = {
        "payment.authorized": "authorized",
        "payment.captured": "captured",
        "payment.failed": "failed",
        "order.paid": "captured",
    }[event]
    entity = {
        "id": payment_id,
        "order_id": order_id,
        "amount": amount,
        "currency": "INR",
        "status": status,
        "method": "card",
        "captured": status == "captured",
        "fee": 0,
        "tax": 0,
    }
    if status == "failed":
        entity.update(
            {
                "error_code": "BAD_REQUEST_ERROR",
                "error_description": "Payment declined by the bank",
                "error_source": "bank",
                "error_step": "payment_authorization",
                "error_reason": "payment_failed",
            }
        )
    payload = {"payment": {"entity": entity}}
    if event == "order.paid":
        payload["order"] = {"entity": {"id": order_id, "amount": amount, "currency": "INR", "status": "paid"}}
    return {"event": event, "created_at": int(time.time()), "payload": payload}


def sample_status_event(message_id: str, status: str, recipient: str, phone_number_id: str) -> dict:
    """Messaging-provider envelope carrying one delivery-status update."""

    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "test-business-account",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": phone_number_id},
                            "statuses": [
                                {
                                    "id": message_id,
                                    "status": status,
                                    "timestamp": str(int(time.time())),
                                    "recipient_id": recipient,
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


def main() -> None:
    """Parse CLI args, sign one payload and send it."""

    parser = argparse.ArgumentParser(description="Send a signed sample webhook to the gateway.")
    parser.add_argument("--gateway-url", default="http://localhost:8000")
    parser.add_argument("--secret", required=True, help="Webhook secret the gateway is configured with")
    sub = parser.add_subparsers(dest="provider", required=True)

    pay = sub.add_parser("payment")
    pay.add_argument(
        "--event",
        default="payment.captured",
        choices=["payment.authorized", "payment.captured", "payment.failed", "order.paid"],
    )
    pay.add_argument("--order-id", required=True)
    pay.add_argument("--payment-id", required=True)
    pay.add_argument("--amount", type=int, default=10000, help="Amount in minor units")

    status = sub.add_parser("status")
    status.add_argument("--message-id", required=True)
    status.add_argument("--status", default="delivered", choices=["sent", "delivered", "read", "failed"])
    status.add_argument("--recipient", required=True)
    status.add_argument("--phone-number-id", default="test-phone-number-id")

    parser.add_argument("--repeat", type=int, default=1, help="Deliver the identical body this many times")
    args = parser.parse_args()

    if args.provider == "payment":
        body = json.dumps(sample_payment_event(args.event, args.order_id, args.payment_id, args.amount))
        url = f"{args.gateway_url}/webhooks/payments"
        signature = hmac.new(args.secret.encode(), body.encode(), hashlib.sha256).hexdigest()
        headers = {"Content-Type": "application/json", "X-Razorpay-Signature": signature}
    else:
        body = json.dumps(sample_status_event(args.message_id, args.status, args.recipient, args.phone_number_id))
        url = f"{args.gateway_url}/webhooks/whatsapp"
        signature = hmac.new(args.secret.encode(), body.encode(), hashlib.sha256).hexdigest()
        headers = {"Content-Type": "application/json", "X-Hub-Signature-256": f"sha256={signature}"}

    for attempt in range(1, args.repeat + 1):
        resp = httpx.post(url, content=body, headers=headers, timeout=10.0)
        print(f"delivery={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
