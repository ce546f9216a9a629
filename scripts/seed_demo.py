# scripts/seed_demo.py
from models.base import Base, init_engine_and_session
from models.billing_store import create_billing
from models.tenants_store import create_property, create_room, create_tenant
from services.datetimex import now_utc
import os
from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root
load_dotenv(Path(__file__).resolve().parents[1] / ".env")

OWNER = os.getenv("SEED_OWNER", "owner")
ROOMS = int(os.getenv("SEED_ROOMS", "3"))
RENT = os.getenv("SEED_RENT", "1500000")


def main():
    engine, _ = init_engine_and_session()
    Base.metadata.create_all(engine, checkfirst=True)

    pid = create_property(OWNER, "Kos Melati", "Jl. Melati No. 12, Yogyakarta")
    print(f"[+] property {pid} (owner={OWNER})")
    for n in range(1, ROOMS + 1):
        rid = create_room(pid, f"{n:02d}", RENT)
        tid = create_tenant(rid, f"Tenant {n:02d}", f"tenant{n:02d}@example.com",
                            f"08123456{n:04d}")
        bill = create_billing(tid, f"Rent room {n:02d}", RENT, "rent",
                              now_utc() + timedelta(days=7))
        print(f"    room {n:02d}: room={rid} tenant={tid} billing={bill['id']}")
    print("[✓] Seed complete. Send a billing with POST /api/billings/<id>/send")


if __name__ == "__main__":
    main()
