import argparse
import json
from pathlib import Path

import requests

parser = argparse.ArgumentParser(description="Upload a registry workbook to a running server")
parser.add_argument("workbook", type=Path)
parser.add_argument("--base-url", default="http://127.0.0.1:5000")
parser.add_argument("--save", action="store_true", help="save the previewed batch")
parser.add_argument("--override", action="store_true", help="override an existing issuer on save")
args = parser.parse_args()

BASE_URL = args.base_url.rstrip("/")
DATA_FILE = args.workbook

if not DATA_FILE.exists():
    raise SystemExit(f"Workbook not found: {DATA_FILE}")

with DATA_FILE.open("rb") as fh:
    response = requests.post(
        f"{BASE_URL}/api/workbook-import/upload",
        files={"file": (DATA_FILE.name, fh)},
    )

print("Upload status:", response.status_code)
try:
    payload = response.json()
except ValueError:
    print("Response text:\n", response.text)
    raise SystemExit(1)

batch = payload.get("batch", {})
print(json.dumps({
    "session_id": payload.get("session_id"),
    "summary": payload.get("summary"),
    "transaction_rule": payload.get("plan", {}).get("transaction_rule"),
    "warnings": payload.get("warnings", [])[:5],
    "issuer": batch.get("issuer"),
    "transaction_sample": batch.get("transactions", [])[:1],
}, indent=2))

if args.save and payload.get("session_id"):
    override = "true" if args.override else "false"
    saved = requests.post(f"{BASE_URL}/api/workbook-import/save/{payload['session_id']}?override={override}")
    print("Save status:", saved.status_code)
    print(json.dumps(saved.json(), indent=2))
