from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class TokenRequest(BaseModel):
    voter_id: str


class TokenResponse(BaseModel):
    token: str


class AdminLoginRequest(BaseModel):
    username: str
    password: str


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class CandidateIn(BaseModel):
    id: int
    name: str


class CreateElectionRequest(BaseModel):
    name: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    candidates: List[CandidateIn] = Field(default_factory=list)


class CreateElectionResponse(BaseModel):
    election_id: str
    key_state: str


class CandidateOut(BaseModel):
    id: int
    name: str


class ElectionOut(BaseModel):
    id: str
    name: str
    description: Optional[str]
    start_time: datetime
    end_time: datetime
    closed: bool
    state: str
    has_server_key: bool
    candidates: List[CandidateOut]


class ServerKeyRequest(BaseModel):
    server_key: str


class ServerKeyResponse(BaseModel):
    election_id: str
    server_key: str


class BallotRequest(BaseModel):
    token: str
    ciphertext: str
    candidate_id: Optional[int] = None


class BallotAccepted(BaseModel):
    status: str = "accepted"
    ballot_hash: str
    submitted_at: datetime


class CandidateCount(BaseModel):
    id: int
    name: str
    count: int


class ResultResponse(BaseModel):
    election_id: str
    winner_id: Optional[int]
    winner_label: Optional[str]
    counts: List[CandidateCount]
    ballot_count: int
    computed_at: datetime
    message: Optional[str] = None


class PendingResponse(BaseModel):
    message: str = "pending"
    state: str


class LedgerItem(BaseModel):
    ballot_hash: str
    prev_hash: Optional[str]
    submitted_at: datetime


class LedgerPage(BaseModel):
    items: List[LedgerItem]
    page: int
    page_size: int
    total: int


class AuditLogItem(BaseModel):
    id: int
    actor: str
    action: str
    election_id: Optional[str]
    ip: Optional[str]
    timestamp: datetime


class AuditLogPage(BaseModel):
    items: List[AuditLogItem]
    page: int
    page_size: int
    total: int
