from datetime import datetime, timezone
from enum import Enum
from typing import Iterable
import logging
import uuid

from sqlalchemy.orm import Session

from .crypto_utils import read_blob_header
from .errors import ValidationError, NotFoundError, ConflictError
from .models import Election, Candidate, AuditLog


logger = logging.getLogger(__name__)


class ElectionState(str, Enum):
    DRAFT = "Draft"
    OPEN = "Open"
    CLOSED = "Closed"
    TALLIED = "Tallied"


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def election_state(election: Election, now: datetime) -> ElectionState:
    """Derive the lifecycle state from stored facts and one clock reading.

    The explicit close flag is checked before the clock, and since neither the
    flag nor ``end_time`` ever move backwards an election that has been seen
    closed stays closed.
    """
    if election.tally is not None:
        return ElectionState.TALLIED
    if election.closed or now >= election.end_time:
        return ElectionState.CLOSED
    if election.start_time <= now and election.server_key:
        return ElectionState.OPEN
    return ElectionState.DRAFT


def _candidate_fields(candidate) -> tuple:
    if isinstance(candidate, dict):
        return candidate.get("id"), candidate.get("name")
    return getattr(candidate, "id", None), getattr(candidate, "name", None)


def create_election(
    db: Session,
    name: str,
    start_time: datetime,
    end_time: datetime,
    candidates: Iterable,
    description: str | None = None,
    actor: str = "admin",
    ip: str | None = None,
) -> str:
    if not name or not name.strip():
        raise ValidationError("election name must not be empty")
    start_time, end_time = to_naive_utc(start_time), to_naive_utc(end_time)
    if end_time <= start_time:
        raise ValidationError("end_time must be after start_time")

    parsed = [_candidate_fields(c) for c in candidates]
    if not parsed:
        raise ValidationError("an election needs at least one candidate")
    seen: set[int] = set()
    for cid, cname in parsed:
        if not isinstance(cid, int) or isinstance(cid, bool):
            raise ValidationError("candidate ids must be integers")
        if cid in seen:
            raise ValidationError(f"duplicate candidate id {cid}")
        if not isinstance(cname, str) or not cname.strip():
            raise ValidationError(f"candidate {cid} needs a name")
        seen.add(cid)

    election = Election(
        id=str(uuid.uuid4()),
        name=name.strip(),
        description=description,
        start_time=start_time,
        end_time=end_time,
        closed=False,
    )
    election.candidates = [
        Candidate(candidate_id=cid, name=cname.strip(), position=pos) for pos, (cid, cname) in enumerate(parsed)
    ]
    db.add(election)
    db.add(AuditLog(actor=actor, action="election_created", election_id=election.id, ip=ip))
    db.commit()
    logger.info("Created election %s (%s) with %d candidates", election.id, election.name, len(parsed))
    return election.id


def get_election(db: Session, election_id: str) -> Election:
    election = db.get(Election, election_id)
    if election is None:
        raise NotFoundError(f"election {election_id} not found")
    return election


def list_elections(db: Session) -> list[Election]:
    return db.query(Election).order_by(Election.created_at.asc(), Election.id.asc()).all()


def close_election(db: Session, election_id: str, actor: str = "admin", ip: str | None = None) -> Election:
    election = get_election(db, election_id)
    if not election.closed:
        election.closed = True
        db.add(AuditLog(actor=actor, action="election_closed", election_id=election_id, ip=ip))
        db.commit()
        logger.info("Election %s closed by %s", election_id, actor)
    return election


def publish_evaluation_key(
    db: Session,
    election_id: str,
    server_key: str,
    now: datetime,
    scheme: str | None = None,
    actor: str = "keyholder",
    ip: str | None = None,
) -> bool:
    """Store the election's evaluation key; the first publisher wins.

    Returns True when this call published the key and False when the very same
    key was already stored.  A different key raises ``ConflictError``.
    """
    if not isinstance(server_key, str) or not server_key:
        raise ValidationError("server_key must be a non-empty string")
    if scheme is not None:
        try:
            key_scheme, _version, kind = read_blob_header(server_key)
        except ValueError:
            raise ValidationError("server_key is not a tagged key blob")
        if key_scheme != scheme or kind != "evaluation_key":
            raise ValidationError(f"server_key must be a {scheme} evaluation key")
    election = get_election(db, election_id)

    updated = (
        db.query(Election)
        .filter(Election.id == election_id, Election.server_key.is_(None))
        .update({Election.server_key: server_key, Election.server_key_published_at: now},
                synchronize_session=False)
    )
    if updated:
        db.add(AuditLog(actor=actor, action="key_published", election_id=election_id, ip=ip))
        db.commit()
        logger.info("Evaluation key published for election %s", election_id)
        return True

    db.rollback()
    db.refresh(election)
    if election.server_key == server_key:
        return False
    raise ConflictError("a different evaluation key is already published for this election")


def election_view(election: Election, now: datetime) -> dict:
    state = election_state(election, now)
    return {
        "id": election.id,
        "name": election.name,
        "description": election.description,
        "start_time": election.start_time,
        "end_time": election.end_time,
        "closed": state in (ElectionState.CLOSED, ElectionState.TALLIED),
        "state": state.value,
        "has_server_key": bool(election.server_key),
        "candidates": [{"id": c.candidate_id, "name": c.name} for c in election.candidates],
    }
