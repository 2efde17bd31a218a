import sys

import httpx

BASE_URL = "http://127.0.0.1:4001"


def main(token: str, chat_id: str, text: str) -> None:
    headers = {"Authorization": f"Bearer {token}"}
    record = {"type": "text", "content": text, "sender": "script", "timestamp": {".sv": "timestamp"}}
    with httpx.Client(base_url=BASE_URL, headers=headers, timeout=10) as client:
        resp = client.post(f"/store/messages/{chat_id}", json=record)
        print(resp.status_code)
        print(resp.json())


if __name__ == "__main__":
    if len(sys.argv) < 4:
        print("usage: send_chat.py TOKEN CHAT_ID TEXT")
        sys.exit(1)
    main(sys.argv[1], sys.argv[2], " ".join(sys.argv[3:]))
