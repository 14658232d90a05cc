from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .crypto_utils import sha256_hex
from .elections import ElectionState, election_state
from .engine import EngineGateway
from .errors import AuthError, ConflictError, NotFoundError, StateError, ValidationError, VoteError
from .locks import KeyedLocks
from .models import AuditLog, Ballot, Election
from .tokens import TokenRegistry, token_hash


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Accepted:
    ballot_hash: str
    submitted_at: datetime


@dataclass(frozen=True)
class Rejected:
    error: VoteError


class BallotBox:
    """Admits encrypted ballots, at most one per (election, token).

    Ciphertexts are stored as received.  Only their tag is read here; the
    engine's structural check is the sole other thing that touches them.
    """

    def __init__(self, tokens: TokenRegistry, engine: EngineGateway):
        self.tokens = tokens
        self.engine = engine
        self._locks = KeyedLocks()

    def submit(
        self,
        db: Session,
        election_id: str,
        token: str,
        ciphertext: str,
        now: datetime,
        candidate_id: int | None = None,
        ip: str | None = None,
    ) -> Accepted | Rejected:
        try:
            return self._admit(db, election_id, token, ciphertext, now, candidate_id, ip)
        except VoteError as exc:
            db.rollback()
            logger.info("Ballot rejected for election %s: %s (%s)", election_id, exc.kind, exc.detail)
            return Rejected(exc)

    def _admit(self, db, election_id, token, ciphertext, now, candidate_id, ip) -> Accepted:
        election = db.get(Election, election_id)
        if election is None:
            raise NotFoundError(f"election {election_id} not found")
        state = election_state(election, now)
        if state != ElectionState.OPEN:
            raise StateError(f"election is {state.value}, ballots are only accepted while Open", state=state.value)
        if not self.tokens.is_recognized(db, token):
            raise AuthError("token was not issued by this registry")

        hashed_token = token_hash(token)
        if self._already_voted(db, election_id, hashed_token):
            raise ConflictError("a ballot was already accepted for this token")

        candidate_ids = [c.candidate_id for c in election.candidates]
        if candidate_id is not None and candidate_id not in candidate_ids:
            raise ValidationError(f"unknown candidate {candidate_id}")
        if not isinstance(ciphertext, str) or not self.engine.is_own_blob(ciphertext, "ciphertext"):
            raise ValidationError(f"ciphertext must be a {self.engine.scheme} ciphertext blob")
        self.engine.check_ciphertext(election.server_key, ciphertext, len(candidate_ids))

        with self._locks.hold(election_id):
            if self._already_voted(db, election_id, hashed_token):
                raise ConflictError("a ballot was already accepted for this token")
            ballot_hash = sha256_hex(ciphertext.encode("utf-8"))
            replayed = (
                db.query(Ballot.id)
                .filter(Ballot.election_id == election_id, Ballot.ballot_hash == ballot_hash)
                .first()
            )
            if replayed is not None:
                raise ConflictError("this ciphertext was already cast in this election")
            last = (
                db.query(Ballot.ballot_hash)
                .filter(Ballot.election_id == election_id)
                .order_by(Ballot.id.desc())
                .first()
            )
            ballot = Ballot(
                election_id=election_id,
                token_hash=hashed_token,
                ciphertext=ciphertext,
                ballot_hash=ballot_hash,
                prev_hash=last[0] if last else None,
                submitted_at=now,
            )
            db.add(ballot)
            db.add(AuditLog(actor="voter", action="ballot_accepted", election_id=election_id, ip=ip))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConflictError("a ballot was already accepted for this token")

        logger.info("Ballot %s accepted for election %s", ballot.ballot_hash[:12], election_id)
        return Accepted(ballot_hash=ballot.ballot_hash, submitted_at=ballot.submitted_at)

    @staticmethod
    def _already_voted(db: Session, election_id: str, hashed_token: str) -> bool:
        return (
            db.query(Ballot.id)
            .filter(Ballot.election_id == election_id, Ballot.token_hash == hashed_token)
            .first()
            is not None
        )


def ledger_page(db: Session, election_id: str, page: int = 1, page_size: int = 50) -> tuple[list[Ballot], int]:
    query = db.query(Ballot).filter(Ballot.election_id == election_id)
    total = query.count()
    items = query.order_by(Ballot.id.asc()).offset((page - 1) * page_size).limit(page_size).all()
    return items, total
