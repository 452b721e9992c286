import secrets
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from passlib.context import CryptContext
from app.settings import settings
from app.errors import AuthenticationError

# Signs the bearer credential presented on the WebSocket handshake
serializer = URLSafeTimedSerializer(settings.SESSION_SECRET_KEY, salt="chat-access")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

def hash_password(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)

def random_color() -> str:
    return "#{:06x}".format(secrets.randbelow(0xFFFFFF + 1))

def create_access_token(user_id: int) -> str:
    return serializer.dumps({"sub": user_id})

def verify_credential(token: str) -> int:
    """Decode *token* and return the user id it was issued for."""
    try:
        payload = serializer.loads(token, max_age=settings.TOKEN_MAX_AGE)
    except SignatureExpired as exc:
        raise AuthenticationError("Session expired", detail=str(exc)) from exc
    except BadSignature as exc:
        raise AuthenticationError("Invalid credential", detail=str(exc)) from exc

    user_id = payload.get("sub") if isinstance(payload, dict) else None
    if not isinstance(user_id, int):
        raise AuthenticationError("Invalid credential", detail=f"malformed payload {payload!r}")
    return user_id
