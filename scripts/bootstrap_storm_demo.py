"""
Seed a demo enterprise: one storm-enabled enterprise, an owner, a general
account and one storm server with its staging root.

Usage:
    python scripts/bootstrap_storm_demo.py --endpoint http://127.0.0.1:9300 --staging-root ./storm_staging
"""
import argparse
import json
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from storm.database import SessionLocal, init_db
from storm.models import Account, AccountRole, Enterprise, StormServer


def main() -> None:
    parser = argparse.ArgumentParser(description="Bootstrap a storm demo enterprise")
    parser.add_argument("--enterprise", default="demo", help="Enterprise name")
    parser.add_argument("--max-storm-accounts", type=int, default=5, help="Storm account quota")
    parser.add_argument("--default-bandrate", type=int, default=100, help="Enterprise default bandrate")
    parser.add_argument("--endpoint", default="http://127.0.0.1:9300", help="Storm server provisioning URL")
    parser.add_argument("--staging-root", default="./storm_staging", help="Storm server staging root")
    args = parser.parse_args()

    init_db()
    staging_root = Path(args.staging_root).resolve()
    staging_root.mkdir(parents=True, exist_ok=True)

    db = SessionLocal()
    try:
        enterprise = Enterprise(
            name=args.enterprise,
            storm_enabled=True,
            max_storm_accounts=args.max_storm_accounts,
            default_bandrate=args.default_bandrate,
        )
        db.add(enterprise)
        db.flush()
        owner = Account(enterprise_id=enterprise.id, name=f"{args.enterprise}-owner", role=AccountRole.OWNER)
        member = Account(enterprise_id=enterprise.id, name=f"{args.enterprise}-member", role=AccountRole.GENERAL)
        server = StormServer(name=f"storm-{enterprise.id}", endpoint=args.endpoint, staging_root=str(staging_root))
        db.add_all([owner, member, server])
        db.commit()

        print(json.dumps({
            "enterprise_id": enterprise.id,
            "owner_account_id": owner.id,
            "member_account_id": member.id,
            "storm_server_id": server.id,
            "staging_root": str(staging_root),
        }, indent=2))
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
