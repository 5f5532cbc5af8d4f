import os
import sys
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.pcms.access import ROLE_SUPER_ADMIN
from app.pcms.models import Base, Department, User

# code -> display name; extend via SEED_DEPARTMENTS="CODE:Name,CODE2:Name 2"
DEFAULT_DEPARTMENTS = {
    "PHARM": "Pharmacy Practice",
    "CLIN": "Clinical Sciences",
}


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def _departments_from_env() -> dict[str, str]:
    raw = (os.environ.get("SEED_DEPARTMENTS") or "").strip()
    if not raw:
        return dict(DEFAULT_DEPARTMENTS)
    out: dict[str, str] = {}
    for item in raw.split(","):
        code, _, name = item.partition(":")
        code = code.strip().upper()
        if code:
            out[code] = name.strip() or code
    return out


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed departments and the super admin in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@pcms.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///pcms.db").strip()

    # Direct engine/session so this can run during release without building the Flask app.
    with _session_scope(db_url) as s:
        for code, name in _departments_from_env().items():
            if not s.query(Department).filter(Department.code == code).one_or_none():
                s.add(Department(code=code, name=name, is_active=True))

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                role=ROLE_SUPER_ADMIN,
                is_active=True,
            )
            s.add(user)
        elif user.role != ROLE_SUPER_ADMIN:
            user.role = ROLE_SUPER_ADMIN

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def create_all(*, database_url: str | None = None) -> None:
    """Development shortcut: create tables straight from the models (no alembic)."""
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///pcms.db").strip()
    engine = create_engine(db_url, future=True)
    Base.metadata.create_all(engine)
    engine.dispose()


def main() -> None:
    if "--create-all" in sys.argv[1:]:
        create_all(database_url=None)
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
