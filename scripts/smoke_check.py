import os
import sys
import time
from datetime import datetime, timezone

import requests
from requests.exceptions import RequestException
from dotenv import load_dotenv

load_dotenv()

BASE_URL = os.getenv("POLYDAN_BASE_URL", f"http://localhost:{os.getenv('PORT', '3001')}")


def _get(path: str, timeout: int = 15) -> requests.Response:
    url = f"{BASE_URL.rstrip('/')}{path}"
    return requests.get(url, timeout=timeout)


def fetch_with_retry(path, max_retries=3, delay=5):
    """GET a path, retrying network errors and 5xx answers."""
    for attempt in range(1, max_retries + 1):
        try:
            print(f"Attempt {attempt}/{max_retries} – GET {path}")
            resp = _get(path)
            if resp.status_code < 500:
                return resp
            print(f"⚠️ {path} answered {resp.status_code}. Retrying in {delay}s...")
        except RequestException as e:
            print(f"⚠️ {type(e).__name__} on attempt {attempt}. Retrying in {delay}s...")
        if attempt < max_retries:
            time.sleep(delay)
    print(f"❌ {path} did not answer after {max_retries} attempts.")
    return None


def _json(resp) -> dict:
    """Body as a dict, or {} when the answer is not JSON (e.g. a proxy's HTML error page)."""
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def run_smoke_check(max_retries=3, delay=5) -> bool:
    print(f"[{datetime.now(timezone.utc)}] 🎲 Smoke-checking {BASE_URL} ...")

    health = fetch_with_retry("/api/health", max_retries, delay)
    if health is None or health.status_code != 200 or _json(health).get("status") != "ok":
        print("❌ Health check failed.")
        return False
    print("✅ /api/health ok")

    probe = fetch_with_retry("/api/test-db", max_retries, delay)
    if probe is None or probe.status_code != 200:
        if probe is None:
            detail = "no response"
        else:
            detail = _json(probe).get("error") or f"HTTP {probe.status_code}"
        print(f"❌ Database probe failed: {detail}")
        return False
    print(f"✅ /api/test-db ok ({_json(probe).get('rows')} row(s))")

    return True


if __name__ == "__main__":
    sys.exit(0 if run_smoke_check() else 1)
