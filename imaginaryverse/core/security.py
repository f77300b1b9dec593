import time
from datetime import datetime, timedelta, timezone

from jose import jwt

from imaginaryverse.core.config import settings

ALGO = "HS256"
ACCESS_MINUTES = 60

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def create_access_token(sub: str) -> str:
    exp = now_utc() + timedelta(minutes=ACCESS_MINUTES)
    payload = {"sub": sub, "type": "access", "exp": exp}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGO)

def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGO])

def _pem(value: str) -> str:
    # Env files usually carry the key on one line with escaped newlines
    return value.replace("\\n", "\n")

def app_store_server_token(*, issuer_id: str, key_id: str, private_key_pem: str, bundle_id: str | None) -> str:
    now = int(time.time())
    claims = {
        "iss": issuer_id,
        "iat": now,
        "exp": now + 20 * 60,
        "aud": "appstoreconnect-v1",
    }
    if bundle_id:
        claims["bid"] = bundle_id
    return jwt.encode(
        claims,
        _pem(private_key_pem),
        algorithm="ES256",
        headers={"kid": key_id, "typ": "JWT"},
    )

def app_store_connect_token(*, issuer_id: str, key_id: str, private_key_pem: str) -> str:
    # backdated for clock skew against App Store Connect
    now = int(time.time()) - 30
    return jwt.encode(
        {"iss": issuer_id, "iat": now, "exp": now + 15 * 60, "aud": "appstoreconnect-v1"},
        _pem(private_key_pem),
        algorithm="ES256",
        headers={"kid": key_id},
    )

def google_service_account_assertion(*, client_email: str, private_key_pem: str, scope: str, token_uri: str) -> str:
    now = int(time.time())
    return jwt.encode(
        {
            "iss": client_email,
            "scope": scope,
            "aud": token_uri,
            "iat": now,
            "exp": now + 3600,
        },
        _pem(private_key_pem),
        algorithm="RS256",
    )

def decode_jws_unverified(token: str | None) -> dict:
    if not token:
        return {}
    try:
        claims = jwt.get_unverified_claims(token)
    except Exception:
        return {}
    return claims if isinstance(claims, dict) else {}
