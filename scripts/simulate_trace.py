"""
Walk one product through the whole chain against a running ledger API.
Run:
    python scripts/simulate_trace.py FARMER SHIPPER RECEIVER
The three addresses must already hold their roles (see setup_roles.py).
"""
import os
import sys
import requests

API = os.getenv("LEDGER_API", "http://localhost:8000")

def run_trace(farmer, shipper, receiver, product_id=1, http=requests, api=API):
    steps = [
        ("create", "post", "/api/products", farmer,
         {"product_id": product_id, "name": "Mango", "origin_farm": "Alphonso Farm"}),
        ("metadata", "put", f"/api/products/{product_id}/metadata", farmer,
         {"cid": "bafybeigdyrmangoalphonso"}),
        ("ship", "post", f"/api/products/{product_id}/ship", shipper, None),
        ("receive", "post", f"/api/products/{product_id}/receive", receiver, None),
    ]
    for label, method, path, caller, body in steps:
        rr = getattr(http, method)(f"{api}{path}", json=body, headers={"X-Caller-Address": caller})
        print(label, rr.status_code, rr.text)
        if rr.status_code >= 400:
            return None

    rr = http.get(f"{api}/api/products/{product_id}")
    print("final:", rr.status_code, rr.text)
    return rr.json()

def main():
    if len(sys.argv) < 4:
        print(__doc__)
        return 1
    farmer, shipper, receiver = sys.argv[1:4]
    product_id = int(sys.argv[4]) if len(sys.argv) > 4 else 1
    return 0 if run_trace(farmer, shipper, receiver, product_id) else 1

if __name__ == "__main__":
    sys.exit(main())
