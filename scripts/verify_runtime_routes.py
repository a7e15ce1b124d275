import json
import os

import httpx

UPLOAD_ROUTES = ("/upload-init", "/upload-chunk", "/upload-complete", "/upload-to-storage")


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
    print(f"Checking runtime at {base_url}")
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        try:
            health = client.get("/health")
        except Exception as exc:
            print(f"[FAIL] Could not connect to service: {exc}")
            return 1

        print(f"[INFO] /health status={health.status_code}")
        if health.status_code != 200:
            print("[FAIL] /health is not healthy.")
            return 1

        version = client.get("/version")
        app_version_header = version.headers.get("X-App-Version")
        print(f"[INFO] /version status={version.status_code} X-App-Version={app_version_header}")
        if version.status_code == 200:
            print(f"[OK] version payload: {json.dumps(version.json(), sort_keys=True)}")
        else:
            print("[WARN] /version missing. You may be running an older server process.")

        missing = []
        for route in UPLOAD_ROUTES:
            preflight = client.options(route)
            wrong_method = client.get(route)
            print(f"[INFO] {route} OPTIONS={preflight.status_code} GET={wrong_method.status_code}")
            if preflight.status_code != 200 or wrong_method.status_code != 405:
                missing.append(route)

        if missing:
            print(f"[FAIL] upload routes not served as expected: {', '.join(missing)}")
            print("[HINT] Stop running servers, `git pull`, then restart uvicorn from repo root.")
            return 2

        print("[OK] upload routes are available.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
