from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings
from errors import Unauthorized


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session-token")


def issue_session_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def user_id_from_token(token: str) -> int:
    settings = get_settings()
    try:
        data = _serializer().loads(
            token, max_age=settings.session_max_age_hours * 3600
        )
    except BadSignature as exc:
        raise Unauthorized("Invalid or expired session") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or user_id <= 0:
        raise Unauthorized("Invalid or expired session")
    return user_id
