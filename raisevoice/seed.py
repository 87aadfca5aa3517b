# Seed the grievance store with demo users, grievances and a credit request
#
# Usage:  python -m raisevoice.seed [--reset]
#
# Everything is driven through the engine, so credits, timelines and
# notifications end up exactly as they would from real traffic.

import argparse
import logging

from .config import LOG_LEVEL, MONGODB_DB, MONGODB_URL
from .engine import GrievanceEngine
from .errors import EngineError
from .gateway import MongoGateway, PersistenceGateway
from .models import Identity, Priority

# ---------------------------------------------------------------------------
# Raw definitions
# ---------------------------------------------------------------------------
USERS = [
    # ---- Citizens ----
    {"id": "citizen-rajesh", "name": "Rajesh Kumar Swain",
     "email": "rajesh.swain@email.com", "mobile": "9876543210"},
    {"id": "citizen-anita", "name": "Anita Behera",
     "email": "anita.behera@email.com", "mobile": "9876543211"},
    {"id": "citizen-kuni", "name": "Kuni Sabar",
     "email": "kuni.sabar@email.com", "mobile": "9876543213"},

    # ---- Administrators ----
    {"id": "admin-priya", "name": "Priya Pattnaik",
     "email": "priya.admin@raisevoice.example", "mobile": "9988776655", "is_admin": True},
    {"id": "admin-anil", "name": "Anil Panigrahi",
     "email": "anil.admin@raisevoice.example", "mobile": "9988776601", "is_admin": True},
]

GRIEVANCES = [
    {"submitter": "citizen-rajesh",
     "title": "Street light broken near the school",
     "description": "The only street light on the school road has been broken for two weeks. "
                    "Children walk home in the dark."},
    {"submitter": "citizen-rajesh",
     "title": "Garbage not collected",
     "description": "Waste has not been picked up from ward 4 since last Monday."},
    {"submitter": "citizen-anita",
     "title": "Gas leak smell at the market",
     "description": "Strong smell near the fish market stalls. Please send someone immediately."},
    {"submitter": "citizen-anita",
     "title": "Ration card correction",
     "description": "My name is misspelled on the family ration card issued in March."},
    {"submitter": "citizen-kuni",
     "title": "Hand pump gives contaminated water",
     "description": "The village hand pump water is brown and people are falling sick."},
]


def seed(gateway: PersistenceGateway) -> GrievanceEngine:
    engine = GrievanceEngine(gateway)
    users = {u["id"]: engine.users.ensure(Identity(**u)) for u in USERS}
    admin, other_admin = users["admin-priya"], users["admin-anil"]

    created = []
    for g in GRIEVANCES:
        try:
            grievance = engine.submit(users[g["submitter"]], g["title"], g["description"])
        except EngineError as e:
            print(f"  SKIP  {g['title']} ({e})")
            continue
        created.append(grievance)
        print(f"  ADD   [{grievance.priority:>6}] {grievance.title}")

    # Walk a few grievances through the workflow
    for grievance in created:
        if grievance.priority == Priority.URGENT:
            engine.lifecycle.assign(grievance.id, admin, other_admin.id)
        elif grievance.title.startswith("Garbage"):
            engine.lifecycle.start_processing(grievance.id, admin, "Sanitation crew scheduled.")
            engine.lifecycle.resolve(grievance.id, admin, "Ward 4 cleared on Friday.")
        elif grievance.title.startswith("Street light"):
            engine.lifecycle.add_comment(grievance.id, admin, "Electrician has been informed.")

    # Rajesh has used two credits; ask for more so the admin queue is not empty
    try:
        engine.ledger.request_more(users["citizen-rajesh"],
                                   "Reporting several problems in my ward this month.")
    except EngineError as e:
        print(f"  SKIP  credit request ({e})")
    return engine


def reset(gateway: MongoGateway):
    for name in ("users", "grievances", "credit_requests", "credit_request_claims",
                 "notifications"):
        gateway.db[name].drop()
    print("  Dropped existing collections")


def main():
    parser = argparse.ArgumentParser(description="Seed the RaiseVoice grievance store")
    parser.add_argument("--reset", action="store_true", help="drop existing data first")
    args = parser.parse_args()
    logging.basicConfig(level=LOG_LEVEL)

    print(f"Seeding {MONGODB_DB} at {MONGODB_URL} ...")
    gateway = MongoGateway.connect()
    try:
        if args.reset:
            reset(gateway)
        gateway.ensure_indexes()
        seed(gateway)
    finally:
        gateway.close()

    # Imported late: the API module refuses to load without a JWT secret
    from .api import create_access_token
    print("\nDemo bearer tokens:")
    for u in USERS:
        print(f"  {u['id']:<16} {create_access_token(Identity(**u))}")


if __name__ == "__main__":
    main()
