from __future__ import annotations

import sys
from pathlib import Path

# Allow running as: python scripts/registration_smoketest.py
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from userauth.deps import build_repository
from userauth.errors import AlreadyExists
from userauth.logging_config import configure_logging
from userauth.models import UserAuth
from userauth.settings import get_settings


def main() -> int:
    """Create, rename, authenticate and delete two users against the configured backend.

    USERAUTH_BACKEND=dynamodb DYNAMODB_ENDPOINT_URL=http://127.0.0.1:8000 runs it
    against DynamoDB Local (tables are provisioned on first use).
    """
    configure_logging()
    settings = get_settings()
    repo = build_repository(settings)
    provision = getattr(repo.backend, "provision", None)
    if provision is not None:
        provision(5, 1)

    user1 = repo.create_user_auth(
        UserAuth(email="user1@example.org", first_name="Tom", last_name="Example", display_name="Tom Example"),
        "passworda",
    )
    user2 = repo.create_user_auth(UserAuth(email="user2@example.org", display_name="Tom Example"), "passwordb")
    print("created", user1.id, user1.email, user2.id, user2.email)

    try:
        repo.create_user_auth(UserAuth(email="USER1@example.org"), "passwordc")
        print("duplicate email was accepted")
        return 1
    except AlreadyExists as e:
        print("duplicate rejected:", e)

    renamed = user1.model_copy(update={"email": "user1a@example.org", "user_name": "tomtom"})
    user1 = repo.update_user_auth(user1, renamed, "null")
    print("renamed", user1.id, user1.user_name, user1.email)

    ok = [
        repo.try_authenticate("user2@example.org", "passwordb") is not None,
        repo.try_authenticate("user1a@example.org", "null") is not None,
        repo.try_authenticate("tomtom", "null") is not None,
        repo.try_authenticate("user1@example.org", "null") is None,
    ]
    print("authenticate", ok)

    repo.delete_user_auth(user1.id)
    repo.delete_user_auth(str(user2.id))
    print("deleted", repo.get_user_auth(user1.id), repo.get_user_auth(user2.id))

    return 0 if all(ok) else 1


if __name__ == "__main__":
    raise SystemExit(main())
