from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from db import Settings, settings

ALGO = "HS256"

def create_access_token(data: dict, minutes: int | None = None, cfg: Settings = settings) -> str:
    """
    Tokens are issued by the identity provider in front of this service;
    this helper mints compatible ones for tooling and tests.
    """
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes or cfg.JWT_EXPIRE_MINUTES)
    payload = {**data, "exp": expire}
    return jwt.encode(payload, cfg.JWT_SECRET, algorithm=ALGO)

def token_for_patron(patron, cfg: Settings = settings) -> str:
    return create_access_token(
        {"sub": patron.email, "role": patron.role, "patron_id": patron.patron_id},
        cfg=cfg,
    )

def decode_token(token: str, cfg: Settings = settings) -> dict:
    try:
        payload = jwt.decode(token, cfg.JWT_SECRET, algorithms=[ALGO])
    except JWTError:
        raise ValueError("Invalid token")
    if payload.get("role") not in ("admin", "user"):
        raise ValueError("Invalid token role")
    return payload
