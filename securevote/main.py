from fastapi import FastAPI, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from datetime import datetime
import logging
import os

from . import elections as registry
from .auth import router as auth_router, get_db, require_admin, client_ip, hash_password
from .ballots import BallotBox, Accepted, ledger_page
from .config import Settings
from .crypto_utils import load_or_create_secret, ensure_self_signed_cert
from .database import make_engine, make_session_factory, init_db
from .engine import EngineGateway, PaillierEngine
from .errors import VoteError, NotFoundError, EngineError, ValidationError
from .keyholder import KeyHolder
from .models import AuditLog, utcnow
from .schemas import (
    CreateElectionRequest, CreateElectionResponse, ElectionOut, ServerKeyRequest, ServerKeyResponse,
    BallotRequest, BallotAccepted, ResultResponse, PendingResponse, LedgerItem, LedgerPage,
    AuditLogItem, AuditLogPage,
)
from .tally import TallyEngine, TallyOutcome, Pending, NO_VOTES_MESSAGE
from .tokens import TokenRegistry


logger = logging.getLogger(__name__)


def request_time() -> datetime:
    # Sampled once per request so every state check sees the same instant
    return utcnow()


def error_response(exc: VoteError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(settings: Settings | None = None, engine=None) -> FastAPI:
    settings = settings or Settings.from_env()
    settings.ensure_dirs()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    db_engine = make_engine(settings.resolved_database_url)
    init_db(db_engine)
    session_factory = make_session_factory(db_engine)

    gateway = EngineGateway(engine or PaillierEngine(settings.engine_key_size), timeout=settings.engine_timeout_seconds)

    def publish_locally(election_id: str, server_key: str):
        with session_factory() as db:
            registry.publish_evaluation_key(
                db, election_id, server_key, utcnow(), scheme=gateway.scheme, actor="authority"
            )

    key_holder = KeyHolder(settings.keystore_dir, gateway, publish_locally)
    tokens = TokenRegistry(load_or_create_secret(settings.secrets_dir, "token_secret"))

    app = FastAPI(title="SecureVote homomorphic election service")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.engine = gateway
    app.state.tokens = tokens
    app.state.key_holder = key_holder
    app.state.ballot_box = BallotBox(tokens, gateway)
    app.state.tally = TallyEngine(session_factory, gateway, key_holder.reveal)
    app.state.jwt_secret = load_or_create_secret(settings.secrets_dir, "jwt_secret").hex()
    app.state.admin_password_hash = hash_password(settings.admin_password)

    @app.exception_handler(VoteError)
    def handle_vote_error(request: Request, exc: VoteError):
        return error_response(exc)

    @app.on_event("shutdown")
    def on_shutdown():
        gateway.shutdown()
        db_engine.dispose()

    @app.get("/")
    def root():
        return {"message": "API active"}

    app.include_router(auth_router)

    @app.post("/admin/elections", response_model=CreateElectionResponse)
    def create_election(
        req: CreateElectionRequest,
        request: Request,
        admin: str = Depends(require_admin),
        db: Session = Depends(get_db),
    ):
        election_id = registry.create_election(
            db,
            name=req.name,
            description=req.description,
            start_time=req.start_time,
            end_time=req.end_time,
            candidates=req.candidates,
            actor=f"admin:{admin}",
            ip=client_ip(request),
        )
        if settings.auto_provision_keys:
            try:
                key_holder.provision(election_id)
            except EngineError as exc:
                # The election is stored either way; POST ./keys provisions it later
                logger.warning("Key provisioning for election %s failed: %s", election_id, exc.detail)
        return CreateElectionResponse(election_id=election_id, key_state=key_holder.state(election_id).value)

    @app.post("/admin/elections/{election_id}/keys")
    def provision_keys(election_id: str, admin: str = Depends(require_admin), db: Session = Depends(get_db)):
        registry.get_election(db, election_id)
        state = key_holder.provision(election_id)
        return {"election_id": election_id, "key_state": state.value}

    @app.post("/admin/elections/{election_id}/close", response_model=ElectionOut)
    def close_election(
        election_id: str,
        request: Request,
        admin: str = Depends(require_admin),
        db: Session = Depends(get_db),
        now: datetime = Depends(request_time),
    ):
        election = registry.close_election(db, election_id, actor=f"admin:{admin}", ip=client_ip(request))
        return registry.election_view(election, now)

    @app.get("/admin/logs", response_model=AuditLogPage)
    def admin_logs(page: int = 1, page_size: int = 10, admin: str = Depends(require_admin), db: Session = Depends(get_db)):
        page, page_size = max(page, 1), min(max(page_size, 1), 200)
        total = db.query(AuditLog).count()
        items_q = db.query(AuditLog).order_by(AuditLog.id.desc()).offset((page - 1) * page_size).limit(page_size).all()
        items = [
            AuditLogItem(id=lg.id, actor=lg.actor, action=lg.action, election_id=lg.election_id, ip=lg.ip, timestamp=lg.timestamp)
            for lg in items_q
        ]
        return AuditLogPage(items=items, page=page, page_size=page_size, total=total)

    @app.get("/elections", response_model=list[ElectionOut])
    def list_elections(db: Session = Depends(get_db), now: datetime = Depends(request_time)):
        return [registry.election_view(e, now) for e in registry.list_elections(db)]

    @app.get("/elections/{election_id}", response_model=ElectionOut)
    def get_election(election_id: str, db: Session = Depends(get_db), now: datetime = Depends(request_time)):
        return registry.election_view(registry.get_election(db, election_id), now)

    @app.get("/elections/{election_id}/server-key", response_model=ServerKeyResponse)
    def get_server_key(election_id: str, db: Session = Depends(get_db)):
        election = registry.get_election(db, election_id)
        if not election.server_key:
            raise NotFoundError("no evaluation key has been published for this election")
        return ServerKeyResponse(election_id=election_id, server_key=election.server_key)

    @app.post("/elections/{election_id}/server-key")
    def publish_server_key(
        election_id: str,
        req: ServerKeyRequest,
        request: Request,
        admin: str = Depends(require_admin),
        db: Session = Depends(get_db),
        now: datetime = Depends(request_time),
    ):
        published = registry.publish_evaluation_key(
            db, election_id, req.server_key, now, scheme=gateway.scheme, actor=f"admin:{admin}", ip=client_ip(request)
        )
        return {"election_id": election_id, "status": "published" if published else "already_published"}

    @app.post("/elections/{election_id}/ballots", response_model=BallotAccepted)
    def submit_ballot(
        election_id: str,
        req: BallotRequest,
        request: Request,
        db: Session = Depends(get_db),
        now: datetime = Depends(request_time),
    ):
        outcome = app.state.ballot_box.submit(
            db, election_id, req.token, req.ciphertext, now, candidate_id=req.candidate_id, ip=client_ip(request)
        )
        if not isinstance(outcome, Accepted):
            return error_response(outcome.error)
        return BallotAccepted(ballot_hash=outcome.ballot_hash, submitted_at=outcome.submitted_at)

    @app.get("/elections/{election_id}/result", response_model=ResultResponse | PendingResponse)
    def get_result(election_id: str, db: Session = Depends(get_db), now: datetime = Depends(request_time)):
        outcome = app.state.tally.request_result(db, election_id, now)
        if isinstance(outcome, Pending):
            return PendingResponse(state=outcome.state)
        if not isinstance(outcome, TallyOutcome):
            return error_response(outcome.error)
        return ResultResponse(
            election_id=outcome.election_id,
            winner_id=outcome.winner_id,
            winner_label=outcome.winner_label,
            counts=outcome.counts,
            ballot_count=outcome.ballot_count,
            computed_at=outcome.computed_at,
            message=NO_VOTES_MESSAGE if outcome.no_votes else None,
        )

    @app.get("/elections/{election_id}/ledger", response_model=LedgerPage)
    def ledger(election_id: str, page: int = 1, page_size: int = 50, db: Session = Depends(get_db)):
        registry.get_election(db, election_id)
        if page < 1 or page_size < 1 or page_size > 500:
            raise ValidationError("page must be at least 1 and page_size between 1 and 500")
        items, total = ledger_page(db, election_id, page, page_size)
        return LedgerPage(
            items=[LedgerItem(ballot_hash=b.ballot_hash, prev_hash=b.prev_hash, submitted_at=b.submitted_at) for b in items],
            page=page,
            page_size=page_size,
            total=total,
        )

    return app


def serve():
    import uvicorn

    settings = Settings.from_env()
    settings.ensure_dirs()
    cert_file, key_file = ensure_self_signed_cert(settings.certs_dir)
    uvicorn.run(
        create_app(settings),
        host=os.getenv("SECUREVOTE_HOST", "127.0.0.1"),
        port=int(os.getenv("SECUREVOTE_PORT", "8443")),
        ssl_certfile=cert_file,
        ssl_keyfile=key_file,
    )


if __name__ == "__main__":
    serve()
