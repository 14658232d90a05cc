"""Voter and key-holder side of the protocol.

Everything that must stay with the requesting principal lives here: the
identity to token mapping (``CredentialStore``), local encryption of the
selection, and the publisher a ``KeyHolder`` uses to send its evaluation key.
The server only ever sees tokens and ciphertexts.
"""

from datetime import datetime
import json
import logging
import os
import threading
import time

import requests

from .engine import EncryptionEngine, PaillierEngine
from .errors import error_from_dict


logger = logging.getLogger(__name__)


class CredentialStore:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def get(self, identity: str) -> str | None:
        with self._lock:
            return self._read().get(identity)

    def put_if_absent(self, identity: str, token: str) -> str:
        with self._lock:
            data = self._read()
            if identity in data:
                return data[identity]
            data[identity] = token
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            fd = os.open(f"{self.path}.tmp", os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(f"{self.path}.tmp", self.path)
            return token


class SecureVoteClient:
    def __init__(
        self,
        base_url: str,
        session=None,
        credentials: CredentialStore | None = None,
        engine: EncryptionEngine | None = None,
        retries: int = 3,
        backoff: float = 0.5,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.credentials = credentials
        self.engine = engine or PaillierEngine()
        self.retries = retries
        self.backoff = backoff
        self.timeout = timeout
        self._headers: dict[str, str] = {}

    def _request(self, method: str, path: str, **kwargs):
        kwargs.setdefault("headers", {}).update(self._headers)
        if isinstance(self.session, requests.Session):
            kwargs.setdefault("timeout", self.timeout)
        attempt = 0
        while True:
            response = self.session.request(method, f"{self.base_url}{path}", **kwargs)
            body = response.json() if response.content else {}
            if response.status_code < 400:
                return body
            if isinstance(body, dict) and "error" in body:
                error = error_from_dict(body)
                if error.retryable and attempt < self.retries:
                    delay = self.backoff * (2 ** attempt)
                    logger.info("%s %s: %s, retrying in %.1fs", method, path, error.kind, delay)
                    time.sleep(delay)
                    attempt += 1
                    continue
                raise error
            response.raise_for_status()

    # Admin

    def login(self, username: str, password: str):
        body = self._request("POST", "/auth/admin/login", json={"username": username, "password": password})
        self._headers["Authorization"] = f"Bearer {body['access_token']}"

    def create_election(
        self,
        name: str,
        start_time: datetime,
        end_time: datetime,
        candidates: list[dict],
        description: str | None = None,
    ) -> str:
        body = self._request("POST", "/admin/elections", json={
            "name": name,
            "description": description,
            "start_time": start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "candidates": candidates,
        })
        return body["election_id"]

    def close_election(self, election_id: str) -> dict:
        return self._request("POST", f"/admin/elections/{election_id}/close")

    def provision_keys(self, election_id: str) -> str:
        return self._request("POST", f"/admin/elections/{election_id}/keys")["key_state"]

    # Key holder

    def publish_server_key(self, election_id: str, server_key: str) -> str:
        body = self._request("POST", f"/elections/{election_id}/server-key", json={"server_key": server_key})
        return body["status"]

    # Voter

    def obtain_token(self, voter_id: str) -> str:
        if self.credentials is not None:
            stored = self.credentials.get(voter_id)
            if stored:
                return stored
        token = self._request("POST", "/auth/token", json={"voter_id": voter_id})["token"]
        if self.credentials is not None:
            token = self.credentials.put_if_absent(voter_id, token)
        return token

    def elections(self) -> list[dict]:
        return self._request("GET", "/elections")

    def election(self, election_id: str) -> dict:
        return self._request("GET", f"/elections/{election_id}")

    def server_key(self, election_id: str) -> str:
        return self._request("GET", f"/elections/{election_id}/server-key")["server_key"]

    def cast_vote(self, voter_id: str, election_id: str, candidate_id: int) -> dict:
        token = self.obtain_token(voter_id)
        election = self.election(election_id)
        candidate_ids = [c["id"] for c in election["candidates"]]
        ciphertext = self.engine.encrypt(self.server_key(election_id), candidate_id, candidate_ids)
        # The choice itself stays on this side; only the ciphertext is sent
        return self._request("POST", f"/elections/{election_id}/ballots", json={
            "token": token,
            "ciphertext": ciphertext,
        })

    def result(self, election_id: str) -> dict:
        return self._request("GET", f"/elections/{election_id}/result")

    def ledger(self, election_id: str, page: int = 1, page_size: int = 50) -> dict:
        return self._request("GET", f"/elections/{election_id}/ledger", params={"page": page, "page_size": page_size})


def remote_publisher(client: SecureVoteClient):
    """Publisher for a ``KeyHolder`` running on a different machine than the server.

    Publishing needs an admin session, so call ``client.login`` first.
    """

    def publish(election_id: str, server_key: str):
        status = client.publish_server_key(election_id, server_key)
        logger.info("Server key for election %s: %s", election_id, status)

    return publish
