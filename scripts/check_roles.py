"""
Print the ledger owner and the roles held by each address.
Run:
    python scripts/check_roles.py [ADDRESS ...]
With no address, only the owner is checked.
"""
import os
import sys
import requests

API = os.getenv("LEDGER_API", "http://localhost:8000")

def check_roles(addresses, http=requests, api=API):
    info = http.get(f"{api}/api/ledger").json()
    print("Ledger owner:", info["owner"])
    print("Products:", info["products"], "Events:", info["events"])

    report = {}
    for address in [info["owner"], *addresses]:
        rr = http.get(f"{api}/api/roles/{address}")
        if rr.status_code != 200:
            print(f"{address}: {rr.json().get('reason', rr.text)}")
            continue
        status = rr.json()
        report[status["address"]] = status
        print(f"{address[:6]}...{address[-4:]}:")
        for role in ("farmer", "shipper", "receiver"):
            print(f"  - {role}: {status[role]}")
    return report

def main():
    check_roles(sys.argv[1:])
    return 0

if __name__ == "__main__":
    sys.exit(main())
