import hmac

from fastapi import Request

from studygate.app.core.config import settings
from studygate.app.db.crud import hash_api_key, lookup_user_by_hash
from studygate.app.db.dependencies import SessionDep
from studygate.app.db.models import User
from studygate.app.exceptions import AuthenticationError

MAX_API_KEY_LENGTH = 512


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate the admin token for operational endpoints.

    Raises:
        AuthenticationError: If the admin token is missing, wrong or not configured
    """
    expected_token = settings.admin_token.strip()
    if not expected_token:
        raise AuthenticationError("Admin token is not configured")

    # Compare even when the header is absent so timing does not leak
    token = get_bearer_token(request) or ""
    if not hmac.compare_digest(token, expected_token):
        raise AuthenticationError("Invalid or missing admin token")

    return "admin"


async def require_user(
    request: Request,
    session: SessionDep,
) -> User:
    """Validate the API key and return the associated user.

    Raises:
        AuthenticationError: If the API key is missing, too long or unknown
    """
    token = get_bearer_token(request)
    if not token:
        raise AuthenticationError("Missing API key")

    # Checked before hashing so that huge headers cost nothing
    if len(token) > MAX_API_KEY_LENGTH:
        raise AuthenticationError("Invalid API key")

    user = await lookup_user_by_hash(session, hash_api_key(token))
    if user is None:
        raise AuthenticationError("Invalid API key")

    request.state.user_id = user.id
    return user
