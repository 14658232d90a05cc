from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from .database import Base


def utcnow() -> datetime:
    # Stored as naive UTC; SQLite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class VoterToken(Base):
    __tablename__ = "voter_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, index=True, nullable=False)
    issued_at = Column(DateTime, default=utcnow)


class Election(Base):
    __tablename__ = "elections"

    id = Column(String(36), primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    closed = Column(Boolean, default=False, nullable=False)
    server_key = Column(Text, nullable=True)
    server_key_published_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    candidates = relationship(
        "Candidate", back_populates="election", order_by="Candidate.position", cascade="all, delete-orphan"
    )
    tally = relationship("TallyResult", back_populates="election", uselist=False)


class Candidate(Base):
    __tablename__ = "candidates"
    __table_args__ = (UniqueConstraint("election_id", "candidate_id", name="uq_candidate_per_election"),)

    id = Column(Integer, primary_key=True)
    election_id = Column(String(36), ForeignKey("elections.id"), nullable=False, index=True)
    candidate_id = Column(Integer, nullable=False)
    position = Column(Integer, nullable=False)
    name = Column(String(200), nullable=False)

    election = relationship("Election", back_populates="candidates")


class Ballot(Base):
    __tablename__ = "ballots"
    __table_args__ = (UniqueConstraint("election_id", "token_hash", name="uq_one_ballot_per_token"),)

    id = Column(Integer, primary_key=True, index=True)
    election_id = Column(String(36), ForeignKey("elections.id"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False)
    ciphertext = Column(Text, nullable=False)
    ballot_hash = Column(String(64), nullable=False, index=True)
    prev_hash = Column(String(64), nullable=True)
    submitted_at = Column(DateTime, default=utcnow)


class TallyResult(Base):
    __tablename__ = "tally_results"

    id = Column(Integer, primary_key=True)
    election_id = Column(String(36), ForeignKey("elections.id"), unique=True, nullable=False)
    counts_json = Column(Text, nullable=False)
    winner_id = Column(Integer, nullable=True)
    winner_label = Column(String(200), nullable=True)
    ballot_count = Column(Integer, nullable=False, default=0)
    computed_at = Column(DateTime, default=utcnow)

    election = relationship("Election", back_populates="tally")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor = Column(String(150), nullable=False)
    action = Column(String(100), nullable=False)
    election_id = Column(String(36), nullable=True, index=True)
    ip = Column(String(100), nullable=True)
    timestamp = Column(DateTime, default=utcnow)
