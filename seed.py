"""
Seed demo users, the default expense policy and sample clients/projects.

Run once against an empty database:  python seed.py
"""
from datetime import date
from decimal import Decimal
import logging

from sqlalchemy.orm import Session

from db import SessionLocal, engine
from models import Base, Client, ExpensePolicy, Project, User, UserRole
from auth import hash_password

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "Password123!"

DEMO_USERS = [
    ("admin@yds.in", "Admin User", UserRole.ADMIN),
    ("manager@yds.in", "Manager User", UserRole.MANAGER),
    ("sales1@yds.in", "Sales Rep One", UserRole.SALES),
    ("sales2@yds.in", "Sales Rep Two", UserRole.SALES),
    ("proj1@yds.in", "Project Rep One", UserRole.PROJECTS),
]

DEMO_CLIENTS = [
    ("ABC Industries Pvt Ltd", "+91 98765 43210", "rajesh@abcindustries.in", "Gurgaon"),
    ("XYZ Construction Co", "+91 98765 43211", "priya@xyzconstruction.in", "Noida"),
    ("Delta Manufacturing", "+91 98765 43212", "vikram@deltamfg.in", "Faridabad"),
]

DEMO_PROJECTS = [
    ("PRJ-2024-001", "123 Industrial Area, Phase 2, Gurgaon, Haryana", 28.4595, 77.0266),
    ("PRJ-2024-002", "456 Construction Plaza, Noida, UP", 28.5355, 77.3910),
    ("PRJ-2024-003", "789 Manufacturing Hub, Faridabad, Haryana", 28.4089, 77.3178),
]


def default_policy() -> ExpensePolicy:
    return ExpensePolicy(
        name="Standard Travel Policy 2024",
        rate_per_km=Decimal("10.00"),
        min_accuracy_m=80,
        max_ping_gap_minutes=10,
        min_valid_segments=10,
        ping_interval_sec=60,
        geofence_default_m=150,
        effective_from=date(2024, 1, 1),
        is_active=True,
    )


def seed(db: Session) -> bool:
    """Insert demo data; returns False when users already exist."""
    if db.query(User).first():
        logger.info("Database already seeded, skipping")
        return False

    hashed = hash_password(DEMO_PASSWORD)
    for email, full_name, role in DEMO_USERS:
        db.add(User(email=email, full_name=full_name, role=role.value, hashed_password=hashed, is_active=True))

    db.add(default_policy())

    clients = [Client(name=n, phone=p, email=e, city=c) for n, p, e, c in DEMO_CLIENTS]
    db.add_all(clients)
    db.flush()

    for (code, address, lat, lng), client in zip(DEMO_PROJECTS, clients):
        db.add(Project(
            project_code=code,
            client_id=client.id,
            site_address_text=address,
            site_lat=lat,
            site_lng=lng,
            status="ACTIVE",
        ))

    db.commit()
    logger.info(f"✓ Seeded {len(DEMO_USERS)} users, 1 policy, {len(DEMO_CLIENTS)} clients, {len(DEMO_PROJECTS)} projects")
    return True


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if seed(db):
            print(f"Demo users created. Password for all accounts: {DEMO_PASSWORD}")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
