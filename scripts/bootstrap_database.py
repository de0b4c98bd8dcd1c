#!/usr/bin/env python3
"""Create the FlowIQ schema and seed a demo practice with default accounts."""

from __future__ import annotations

import argparse
import os
import sys
from typing import Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq import auth, db, patients, tenants
from flowiq.config import get_settings
from flowiq.models import Tenant, User

DEFAULT_TENANT = {
    "name": "Example Chiropractic",
    "subdomain": "example-chiro",
    "specialty": "chiropractic",
}

DEFAULT_USERS = {
    "admin": {"username": "admin@flowiq.local", "password": "Admin123!", "role": "admin", "name": "Platform Administrator"},
    "practice_admin": {
        "username": "manager@exampleclinic.com",
        "password": "Manager123!",
        "role": "practice_admin",
        "name": "Practice Manager",
    },
    "provider": {
        "username": "provider@exampleclinic.com",
        "password": "Provider123!",
        "role": "provider",
        "name": "Attending Provider",
    },
}

USER_ENV_VARS = {
    "admin": ("FLOWIQ_ADMIN_USERNAME", "FLOWIQ_ADMIN_PASSWORD"),
    "practice_admin": ("FLOWIQ_MANAGER_USERNAME", "FLOWIQ_MANAGER_PASSWORD"),
    "provider": ("FLOWIQ_PROVIDER_USERNAME", "FLOWIQ_PROVIDER_PASSWORD"),
}

DEMO_PATIENTS = (
    {"first_name": "Jordan", "last_name": "Avery", "date_of_birth": "1975-06-14", "email": "jordan.avery@example.com", "phone": "555-0142"},
    {"first_name": "Priya", "last_name": "Raman", "date_of_birth": "1988-11-02", "email": "priya.raman@example.com", "insurance_provider": "Cigna"},
)


def ensure_tenant(session: Session, args: argparse.Namespace) -> Tuple[Tenant, bool]:
    existing = session.scalar(sa.select(Tenant).where(Tenant.subdomain == args.subdomain))
    if existing is not None:
        return existing, False
    tenant = tenants.create_tenant(session, args.practice_name, args.subdomain, specialty=args.specialty)
    return tenant, True


def _resolve_user_spec(key: str, args: argparse.Namespace) -> Dict[str, str]:
    spec = dict(DEFAULT_USERS[key])
    user_var, pass_var = USER_ENV_VARS[key]
    override_user = getattr(args, f"{key}_username") or os.getenv(user_var)
    override_pass = getattr(args, f"{key}_password") or os.getenv(pass_var)
    if override_user:
        spec["username"] = override_user
    if override_pass:
        spec["password"] = override_pass
    return spec


def seed_default_users(session: Session, tenant: Tenant, args: argparse.Namespace) -> List[Tuple[str, str, str]]:
    created: List[Tuple[str, str, str]] = []
    for key in DEFAULT_USERS:
        spec = _resolve_user_spec(key, args)
        username = spec["username"].strip().lower()
        if session.scalar(sa.select(User.id).where(User.username == username)) is not None:
            continue
        tenant_id: Optional[str] = None if spec["role"] == "admin" else tenant.id
        auth.register_user(session, username, spec["password"], spec["role"], tenant_id, name=spec["name"])
        created.append((username, spec["password"], spec["role"]))
    return created


def seed_demo_patients(session: Session, tenant: Tenant) -> int:
    if patients.list_patients(session, tenant.id, limit=1):
        return 0
    for values in DEMO_PATIENTS:
        patients.create_patient(session, tenant.id, values)
    return len(DEMO_PATIENTS)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed the FlowIQ database with a demo practice and default accounts.",
    )
    parser.add_argument("--practice-name", default=DEFAULT_TENANT["name"], help="Display name of the demo practice")
    parser.add_argument("--subdomain", default=DEFAULT_TENANT["subdomain"], help="Subdomain of the demo practice")
    parser.add_argument(
        "--specialty",
        default=DEFAULT_TENANT["specialty"],
        choices=sorted(tenants.SPECIALTIES),
        help="Specialty of the demo practice (default: %(default)s)",
    )
    parser.add_argument("--skip-user-seed", action="store_true", help="Do not create the default accounts.")
    parser.add_argument("--with-demo-patients", action="store_true", help="Add sample patients to an empty practice.")
    for key in DEFAULT_USERS:
        flag = key.replace("_", "-")
        parser.add_argument(f"--{flag}-username", dest=f"{key}_username", help=f"Override the {key} username")
        parser.add_argument(f"--{flag}-password", dest=f"{key}_password", help=f"Override the {key} password")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = get_settings()

    db.init_db()
    with db.session_scope() as session:
        tenant, tenant_created = ensure_tenant(session, args)
        created_users: List[Tuple[str, str, str]] = []
        if not args.skip_user_seed:
            created_users = seed_default_users(session, tenant, args)
        demo_count = seed_demo_patients(session, tenant) if args.with_demo_patients else 0
        tenant_label = f"{tenant.name} ({tenant.subdomain})"

    print(f"Database initialised at {settings.database_url}")
    print(f"Practice {'created' if tenant_created else 'already present'}: {tenant_label}")
    if demo_count:
        print(f"Added {demo_count} demo patients.")

    if args.skip_user_seed:
        print("User seeding skipped.")
    elif created_users:
        print("Created the following default accounts (update credentials before production use):")
        for username, password, role in created_users:
            print(f"  - {username} ({role}) -> {password}")
    else:
        print("Default users already existed; no credentials were changed.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
