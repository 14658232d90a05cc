from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
import json
import logging
import threading

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .ballots import Rejected
from .elections import ElectionState, election_state
from .engine import EngineGateway
from .errors import EngineError, NotFoundError, StateError, VoteError
from .models import AuditLog, Ballot, Election, TallyResult, utcnow


logger = logging.getLogger(__name__)

NO_VOTES_MESSAGE = "no votes cast"


@dataclass(frozen=True)
class Pending:
    state: str


@dataclass(frozen=True)
class TallyOutcome:
    election_id: str
    counts: list[dict]
    winner_id: int | None
    winner_label: str | None
    ballot_count: int
    computed_at: datetime

    @property
    def no_votes(self) -> bool:
        return self.ballot_count == 0

    @classmethod
    def from_row(cls, row: TallyResult) -> "TallyOutcome":
        return cls(
            election_id=row.election_id,
            counts=json.loads(row.counts_json),
            winner_id=row.winner_id,
            winner_label=row.winner_label,
            ballot_count=row.ballot_count,
            computed_at=row.computed_at,
        )


def pick_winner(counts: list[dict]) -> dict | None:
    """Highest count wins; ties go to the lowest candidate id."""
    if not counts or all(entry["count"] == 0 for entry in counts):
        return None
    return min(counts, key=lambda entry: (-entry["count"], entry["id"]))


class SingleFlight:
    """At most one running call per key; concurrent callers share its outcome."""

    def __init__(self):
        self._lock = threading.Lock()
        self._calls: dict[str, Future] = {}

    def do(self, key: str, fn: Callable):
        with self._lock:
            future = self._calls.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._calls[key] = future
        if leader:
            try:
                future.set_result(fn())
            except BaseException as exc:
                future.set_exception(exc)
            finally:
                with self._lock:
                    self._calls.pop(key, None)
        return future.result()


class TallyEngine:
    def __init__(self, session_factory: sessionmaker, engine: EngineGateway, revealer: Callable[[str, str], list[int]]):
        self.session_factory = session_factory
        self.engine = engine
        self.revealer = revealer
        self.aggregations = 0
        self._flight = SingleFlight()

    def request_result(self, db: Session, election_id: str, now: datetime) -> Pending | TallyOutcome | Rejected:
        election = db.get(Election, election_id)
        if election is None:
            return Rejected(NotFoundError(f"election {election_id} not found"))
        state = election_state(election, now)
        if state == ElectionState.TALLIED:
            return TallyOutcome.from_row(election.tally)
        if state != ElectionState.CLOSED:
            return Pending(state=state.value)
        try:
            return self._flight.do(election_id, lambda: self._compute(election_id))
        except VoteError as exc:
            logger.warning("Tally for election %s failed: %s", election_id, exc.detail)
            return Rejected(exc)

    def _compute(self, election_id: str) -> TallyOutcome:
        with self.session_factory() as db:
            election = db.get(Election, election_id)
            if election.tally is not None:
                return TallyOutcome.from_row(election.tally)

            candidates = list(election.candidates)
            ciphertexts = [
                row[0]
                for row in db.query(Ballot.ciphertext)
                .filter(Ballot.election_id == election_id)
                .order_by(Ballot.id.asc())
                .all()
            ]

            if ciphertexts:
                if not election.server_key:
                    raise StateError("election has ballots but no evaluation key", state=ElectionState.CLOSED.value)
                self.aggregations += 1
                aggregate = self.engine.homomorphic_sum(election.server_key, ciphertexts, len(candidates))
                revealed = self.revealer(election_id, aggregate)
                if len(revealed) != len(candidates):
                    raise EngineError("reveal returned the wrong number of counts")
                # Every admitted one-hot ballot adds exactly 1
                if sum(revealed) != len(ciphertexts) or any(not 0 <= c <= len(ciphertexts) for c in revealed):
                    logger.error(
                        "Election %s: revealed counts %s do not fit %d ballots, refusing to publish a result",
                        election_id, revealed, len(ciphertexts),
                    )
                    db.add(AuditLog(actor="tally", action="tally_rejected", election_id=election_id))
                    db.commit()
                    raise StateError(
                        "revealed counts do not match the number of ballots; the ballot box holds a malformed ballot",
                        state=ElectionState.CLOSED.value,
                    )
            else:
                revealed = [0] * len(candidates)

            counts = [
                {"id": c.candidate_id, "name": c.name, "count": int(count)}
                for c, count in zip(candidates, revealed)
            ]
            winner = pick_winner(counts)
            row = TallyResult(
                election_id=election_id,
                counts_json=json.dumps(counts),
                winner_id=winner["id"] if winner else None,
                winner_label=winner["name"] if winner else None,
                ballot_count=len(ciphertexts),
                computed_at=utcnow(),
            )
            db.add(row)
            db.add(AuditLog(actor="tally", action="tally_computed", election_id=election_id))
            try:
                db.commit()
            except IntegrityError:
                # Another process cached it first
                db.rollback()
                row = db.query(TallyResult).filter(TallyResult.election_id == election_id).one()
            logger.info("Tally for election %s: %d ballots, winner %s", election_id, len(ciphertexts), row.winner_label)
            return TallyOutcome.from_row(row)
