from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from loguru import logger

from dispatch.exceptions import InvalidCredential
from states.fsm_states import Role

# Older clients send the role names used before the account model was unified
_LEGACY_ROLES = {
    'client': Role.REQUESTER,
    'ambulance': Role.DRIVER,
    'hospital': Role.FACILITY,
}


@dataclass(frozen=True)
class Identity:
    subject_id: int | str
    role: Role


def _parse_role(raw) -> Role:
    if raw in _LEGACY_ROLES:
        return _LEGACY_ROLES[raw]
    try:
        return Role(raw)
    except ValueError:
        raise InvalidCredential(f"Unknown role: {raw}")


class TokenVerifier:
    """Verifies signed tokens carrying `userId` and `userType` claims."""

    def __init__(self, secret: str, algorithm: str = 'HS256'):
        self._secret = secret
        self._algorithm = algorithm

    def verify(self, token: str | None) -> Identity:
        if not token:
            raise InvalidCredential("Token is required")
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            raise InvalidCredential("Token expired")
        except jwt.PyJWTError as e:
            logger.info(f"Rejected token: {e}")
            raise InvalidCredential("Invalid token")

        subject = claims.get('userId', claims.get('sub'))
        if subject is None:
            raise InvalidCredential("Token has no subject")
        return Identity(subject_id=subject, role=_parse_role(claims.get('userType', Role.REQUESTER.value)))

    def issue(self, subject_id, role: Role, expires_in: timedelta = timedelta(days=7)) -> str:
        """Signs a token for `subject_id`; used by account tooling and tests."""
        payload = {
            'userId': subject_id,
            'userType': Role(role).value,
            'exp': datetime.now(timezone.utc) + expires_in,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)
