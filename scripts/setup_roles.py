"""
Grant farmer, shipper and receiver roles to every address given.
Run:
    LEDGER_OWNER=0x... python scripts/setup_roles.py ADDRESS [ADDRESS ...]
Only the ledger owner may change roles, so LEDGER_OWNER must match it.
"""
import os
import sys
import requests

API = os.getenv("LEDGER_API", "http://localhost:8000")
OWNER = os.getenv("LEDGER_OWNER", "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266")
ROLES = ("farmer", "shipper", "receiver")

def grant_roles(addresses, owner=OWNER, roles=ROLES, enabled=True, http=requests, api=API):
    failed = []
    for address in addresses:
        for role in roles:
            rr = http.put(f"{api}/api/roles/{role}/{address}",
                          json={"enabled": enabled},
                          headers={"X-Caller-Address": owner})
            if rr.status_code != 200:
                print(f"failed to set {role} for {address}:", rr.status_code, rr.text)
                failed.append((address, role))
        status = http.get(f"{api}/api/roles/{address}").json()
        print(f"{address}: " + ", ".join(f"{r}={status.get(r)}" for r in roles))
    return failed

def main():
    addresses = sys.argv[1:]
    if not addresses:
        print(__doc__)
        return 1
    return 1 if grant_roles(addresses) else 0

if __name__ == "__main__":
    sys.exit(main())
