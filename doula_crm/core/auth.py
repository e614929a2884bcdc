from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from doula_crm.core.config import get_settings

ANONYMOUS = "anonymous"


@dataclass
class AuthUser:
    """Identity decoded from the bearer token.

    ``roles`` holds every grant the token carries: its ``roles`` claim merged
    with its ``permissions`` claim. CRM routes check these grants by name,
    e.g. ``crm.leads.convert``.
    """

    sub: str
    roles: list[str] = field(default_factory=list)
    organization_id: str | None = None


def _bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _claim_list(payload: dict, name: str) -> list[str]:
    value = payload.get(name)
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list):
        return [str(item) for item in value]
    return []


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if token is None:
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    subject = str(payload.get("sub") or ANONYMOUS)
    grants = dict.fromkeys(_claim_list(payload, "roles") + _claim_list(payload, "permissions"))
    organization_id = payload.get("org_id")

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(
        sub=subject,
        roles=list(grants) or ["user"],
        organization_id=str(organization_id) if organization_id else None,
    )
