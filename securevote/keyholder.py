"""Per-election key lifecycle, run by whoever holds the secret keys.

A ``KeyHolder`` owns a private directory that nothing else reads.  For each
election it moves through ``Unkeyed -> KeyGenerated -> Published``: the secret
key is written to the store once and never leaves it, and only the evaluation
key is handed to the publisher.  Losing the store means the election can never
be decrypted; there is no recovery path.
"""

from enum import Enum
from typing import Callable
import json
import logging
import os
import re

from .engine import EngineGateway
from .errors import ConflictError, StateError, ValidationError
from .locks import KeyedLocks
from .models import utcnow


logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class KeyState(str, Enum):
    UNKEYED = "Unkeyed"
    KEY_GENERATED = "KeyGenerated"
    PUBLISHED = "Published"


class KeyHolder:
    def __init__(self, store_dir: str, engine: EngineGateway, publisher: Callable[[str, str], object]):
        self.store_dir = store_dir
        self.engine = engine
        self.publisher = publisher
        self._locks = KeyedLocks()
        os.makedirs(store_dir, mode=0o700, exist_ok=True)

    def _path(self, election_id: str) -> str:
        if not _SAFE_ID.match(election_id or ""):
            raise ValidationError(f"invalid election id {election_id!r}")
        return os.path.join(self.store_dir, f"{election_id}.json")

    def _load(self, election_id: str) -> dict | None:
        path = self._path(election_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, election_id: str, record: dict):
        path = self._path(election_id)
        tmp_path = f"{path}.tmp"
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(record, f)
        os.replace(tmp_path, path)

    def state(self, election_id: str) -> KeyState:
        record = self._load(election_id)
        if record is None:
            return KeyState.UNKEYED
        return KeyState.PUBLISHED if record.get("published") else KeyState.KEY_GENERATED

    def ensure_keys(self, election_id: str) -> KeyState:
        with self._locks.hold(election_id):
            if self._load(election_id) is None:
                bundle = self.engine.generate_key_bundle()
                self._save(election_id, {
                    "secret_key": bundle.secret_key,
                    "evaluation_key": bundle.evaluation_key,
                    "published": False,
                    "created_at": utcnow().isoformat(),
                })
                logger.info("Generated key bundle for election %s", election_id)
        return self.state(election_id)

    def evaluation_key(self, election_id: str) -> str:
        record = self._load(election_id)
        if record is None:
            raise StateError("no keys have been generated for this election", state=KeyState.UNKEYED.value)
        return record["evaluation_key"]

    def publish_evaluation_key(self, election_id: str) -> KeyState:
        with self._locks.hold(election_id):
            record = self._load(election_id)
            if record is None:
                raise StateError("generate keys before publishing", state=KeyState.UNKEYED.value)
            if record.get("published"):
                return KeyState.PUBLISHED
            try:
                self.publisher(election_id, record["evaluation_key"])
            except ConflictError:
                # Someone else's key won; nothing more to publish from here
                logger.warning("Election %s already has a different evaluation key", election_id)
            record["published"] = True
            self._save(election_id, record)
            logger.info("Evaluation key for election %s published", election_id)
        return KeyState.PUBLISHED

    def provision(self, election_id: str) -> KeyState:
        self.ensure_keys(election_id)
        return self.publish_evaluation_key(election_id)

    def holds_secret(self, election_id: str) -> bool:
        return self._load(election_id) is not None

    def reveal(self, election_id: str, aggregate: str) -> list[int]:
        record = self._load(election_id)
        if record is None:
            raise StateError("no secret key is held for this election; its tally cannot be revealed")
        return self.engine.reveal(record["secret_key"], aggregate)
