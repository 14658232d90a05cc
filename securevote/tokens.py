import base64
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .crypto_utils import hmac_sha256, sha256_hex
from .errors import ValidationError
from .models import VoterToken


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "tok_"
MAX_IDENTITY_LENGTH = 256


def token_hash(token: str) -> str:
    return sha256_hex(token.encode("utf-8"))


def normalize_identity(identity) -> str:
    if not isinstance(identity, str):
        raise ValidationError("voter identifier must be a string")
    cleaned = identity.strip()
    if not cleaned:
        raise ValidationError("voter identifier must not be empty")
    if len(cleaned) > MAX_IDENTITY_LENGTH or any(ch in cleaned for ch in "\r\n\t\x00"):
        raise ValidationError("voter identifier is malformed")
    return cleaned


class TokenRegistry:
    """Issues stable pseudonymous tokens.

    Tokens are an HMAC of the voter identifier under a server-held secret, so the
    same identifier always yields the same token.  Only a hash of each issued
    token is stored; the identifier itself never reaches the database.
    """

    def __init__(self, secret: bytes):
        self._secret = secret

    def derive(self, identity: str) -> str:
        mac = hmac_sha256(self._secret, normalize_identity(identity).encode("utf-8"))
        return TOKEN_PREFIX + base64.urlsafe_b64encode(mac).decode().rstrip("=")

    def issue_or_fetch(self, db: Session, identity: str) -> str:
        token = self.derive(identity)
        hashed = token_hash(token)
        if db.query(VoterToken).filter(VoterToken.token_hash == hashed).first():
            return token
        db.add(VoterToken(token_hash=hashed))
        try:
            db.commit()
            logger.info("Issued new voter token %s", hashed[:12])
        except IntegrityError:
            # Lost a first-issuance race; the winner stored the same token
            db.rollback()
        return token

    def is_recognized(self, db: Session, token: str) -> bool:
        if not isinstance(token, str) or not token.startswith(TOKEN_PREFIX):
            return False
        return db.query(VoterToken.id).filter(VoterToken.token_hash == token_hash(token)).first() is not None
