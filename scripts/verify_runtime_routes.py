import json
import os

import httpx


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
    api_key = os.getenv("VERIFY_API_KEY", "dev-key")
    print(f"Checking runtime at {base_url}")
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        try:
            health = client.get("/health")
        except httpx.HTTPError as exc:
            print(f"[FAIL] Could not connect to service: {exc}")
            return 1

        print(f"[INFO] /health status={health.status_code}")
        if health.status_code != 200:
            print("[FAIL] /health is not healthy.")
            return 1

        version = client.get("/version")
        print(f"[INFO] /version status={version.status_code} X-Drive-App-Version={version.headers.get('X-Drive-App-Version')}")
        if version.status_code != 200:
            print("[WARN] /version missing. You may be running an older server process.")
            return 2
        payload = version.json()
        print(f"[OK] version payload: {json.dumps(payload, sort_keys=True)}")
        if payload.get("storage_backend") == "none":
            print("[FAIL] No blob store is configured; uploads will answer 503.")
            print("[HINT] Set STORAGE_BACKEND and the matching bucket settings, then restart uvicorn.")
            return 3

        storage = client.get("/v1/storage", headers={"X-API-Key": api_key})
        print(f"[INFO] /v1/storage status={storage.status_code}")
        if storage.status_code == 200:
            print(f"[OK] quota: {json.dumps(storage.json(), sort_keys=True)}")
            return 0

        print(f"[FAIL] /v1/storage unexpected status: {storage.status_code} {storage.text}")
        return 4


if __name__ == "__main__":
    raise SystemExit(main())
