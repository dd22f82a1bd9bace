from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_handler(secret: str, fail_status: int):
    class WebhookHandler(BaseHTTPRequestHandler):
        def do_POST(self) -> None:
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length)
            provided = self.headers.get("X-Linkcard-Signature", "")
            event_type = self.headers.get("X-Linkcard-Event", "")
            attempt = self.headers.get("X-Linkcard-Delivery-Attempt", "")

            if secret and not hmac.compare_digest(provided, sign_payload(secret, body)):
                print(f"401 bad signature event={event_type} attempt={attempt}")
                self._reply(401, {"ok": False, "error": "invalid signature"})
                return
            try:
                payload = json.loads(body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                self._reply(400, {"ok": False, "error": "invalid json"})
                return

            status_code = fail_status or 200
            print(
                f"{status_code} event={event_type} id={payload.get('id')} attempt={attempt} "
                f"profile={payload.get('profileId')}"
            )
            self._reply(status_code, {"ok": status_code < 300})

        def log_message(self, format: str, *args) -> None:
            return

        def _reply(self, status_code: int, data: dict) -> None:
            encoded = json.dumps(data).encode("utf-8")
            self.send_response(status_code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(encoded)))
            self.end_headers()
            self.wfile.write(encoded)

    return WebhookHandler


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Local receiver that verifies and prints Linkcard webhook deliveries."
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=9000)
    parser.add_argument("--secret", default="", help="Webhook secret from the create response.")
    parser.add_argument(
        "--fail-status",
        type=int,
        default=0,
        help="Answer every delivery with this status to exercise retries (e.g. 503).",
    )
    args = parser.parse_args()

    server = ThreadingHTTPServer((args.host, args.port), build_handler(args.secret, args.fail_status))
    print(f"Listening on http://{args.host}:{args.port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
