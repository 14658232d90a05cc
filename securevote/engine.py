"""Encryption engine used for ballots and tallies.

The rest of the package only relies on the ``EncryptionEngine`` protocol and
treats every key and ciphertext as an opaque tagged blob.  ``PaillierEngine``
is the bundled additively homomorphic implementation built on ``phe``: a
ballot is a vector of encrypted 0/1 indicators, one per candidate, and adding
the ``EncryptedNumber`` vectors component-wise adds the indicators.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Protocol, Sequence
import logging

from phe import paillier

from .crypto_utils import pack_blob, unpack_blob, read_blob_header, sha256_hex
from .errors import EngineError, ValidationError, VoteError


logger = logging.getLogger(__name__)

PAILLIER_SCHEME = "paillier"
PAILLIER_VERSION = 1


@dataclass(frozen=True)
class KeyBundle:
    secret_key: str
    evaluation_key: str


class EncryptionEngine(Protocol):
    scheme: str

    def generate_key_bundle(self) -> KeyBundle: ...

    def encrypt(self, evaluation_key: str, candidate_id: int, candidate_ids: Sequence[int]) -> str: ...

    def check_ciphertext(self, evaluation_key: str, ciphertext: str, arity: int) -> None: ...

    def homomorphic_sum(self, evaluation_key: str, ciphertexts: Sequence[str], arity: int) -> str: ...

    def reveal(self, secret_key: str, aggregate: str) -> list[int]: ...


def _key_id(n: int) -> str:
    return sha256_hex(str(n).encode())[:16]


class PaillierEngine:
    scheme = PAILLIER_SCHEME

    def __init__(self, key_size: int = 2048):
        self.key_size = key_size

    def _unpack(self, blob: str, kind: str) -> dict:
        try:
            return unpack_blob(blob, PAILLIER_SCHEME, PAILLIER_VERSION, kind)
        except (ValueError, TypeError) as exc:
            raise ValidationError(f"malformed {kind}: {exc}") from exc

    def _public_key(self, evaluation_key: str) -> paillier.PaillierPublicKey:
        n = self._unpack(evaluation_key, "evaluation_key").get("n")
        if not isinstance(n, int) or n < 3:
            raise ValidationError("malformed evaluation_key: bad modulus")
        return paillier.PaillierPublicKey(n)

    def _pack_vector(self, kind: str, public_key, vector) -> str:
        return pack_blob(PAILLIER_SCHEME, PAILLIER_VERSION, kind, {
            "kid": _key_id(public_key.n),
            "c": [number.ciphertext(be_secure=False) for number in vector],
        })

    def _vector(self, blob: str, kind: str, public_key, arity: int) -> list:
        payload = self._unpack(blob, kind)
        if payload.get("kid") != _key_id(public_key.n):
            raise ValidationError(f"{kind} was not produced under this election's key")
        values = payload.get("c")
        if not isinstance(values, list) or len(values) != arity:
            raise ValidationError(f"{kind} must hold exactly {arity} values")
        for value in values:
            if not isinstance(value, int) or not 0 < value < public_key.nsquare:
                raise ValidationError(f"{kind} holds a value outside the ciphertext space")
        return [paillier.EncryptedNumber(public_key, value, 0) for value in values]

    def generate_key_bundle(self) -> KeyBundle:
        public_key, private_key = paillier.generate_paillier_keypair(n_length=self.key_size)
        kid = _key_id(public_key.n)
        secret_key = pack_blob(PAILLIER_SCHEME, PAILLIER_VERSION, "secret_key",
                               {"kid": kid, "n": public_key.n, "p": private_key.p, "q": private_key.q})
        evaluation_key = pack_blob(PAILLIER_SCHEME, PAILLIER_VERSION, "evaluation_key", {"kid": kid, "n": public_key.n})
        return KeyBundle(secret_key=secret_key, evaluation_key=evaluation_key)

    def encrypt(self, evaluation_key: str, candidate_id: int, candidate_ids: Sequence[int]) -> str:
        if candidate_id not in candidate_ids:
            raise ValidationError(f"unknown candidate {candidate_id}")
        public_key = self._public_key(evaluation_key)
        vector = [public_key.encrypt(1 if cid == candidate_id else 0) for cid in candidate_ids]
        return self._pack_vector("ciphertext", public_key, vector)

    def check_ciphertext(self, evaluation_key: str, ciphertext: str, arity: int) -> None:
        self._vector(ciphertext, "ciphertext", self._public_key(evaluation_key), arity)

    def homomorphic_sum(self, evaluation_key: str, ciphertexts: Sequence[str], arity: int) -> str:
        public_key = self._public_key(evaluation_key)
        total = [public_key.encrypt(0) for _ in range(arity)]
        for blob in ciphertexts:
            vector = self._vector(blob, "ciphertext", public_key, arity)
            total = [acc + number for acc, number in zip(total, vector)]
        return self._pack_vector("aggregate", public_key, total)

    def reveal(self, secret_key: str, aggregate: str) -> list[int]:
        sk = self._unpack(secret_key, "secret_key")
        public_key = paillier.PaillierPublicKey(sk["n"])
        private_key = paillier.PaillierPrivateKey(public_key, sk["p"], sk["q"])
        payload = self._unpack(aggregate, "aggregate")
        if payload.get("kid") != sk["kid"]:
            raise ValidationError("aggregate was not produced under this secret key's evaluation key")
        vector = self._vector(aggregate, "aggregate", public_key, len(payload.get("c") or []))
        # Plaintexts come back as residues mod n; range checks belong to the caller
        return [private_key.raw_decrypt(number.ciphertext(be_secure=False)) for number in vector]


class EngineGateway:
    """Runs engine calls on a worker pool so each one is bounded by a timeout."""

    def __init__(self, engine: EncryptionEngine, timeout: float = 30.0, max_workers: int = 4):
        self.engine = engine
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="engine")

    @property
    def scheme(self) -> str:
        return self.engine.scheme

    def is_own_blob(self, blob: str, kind: str) -> bool:
        try:
            scheme, _version, got_kind = read_blob_header(blob)
        except ValueError:
            return False
        return scheme == self.engine.scheme and got_kind == kind

    def call(self, operation: str, *args):
        future = self._pool.submit(getattr(self.engine, operation), *args)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout as exc:
            future.cancel()
            logger.warning("Engine %s timed out after %.1fs", operation, self.timeout)
            raise EngineError(f"encryption engine timed out during {operation}") from exc
        except VoteError:
            raise
        except Exception as exc:
            logger.exception("Engine %s failed", operation)
            raise EngineError(f"encryption engine failed during {operation}: {exc}") from exc

    def generate_key_bundle(self) -> KeyBundle:
        return self.call("generate_key_bundle")

    def encrypt(self, evaluation_key: str, candidate_id: int, candidate_ids: Sequence[int]) -> str:
        return self.call("encrypt", evaluation_key, candidate_id, list(candidate_ids))

    def check_ciphertext(self, evaluation_key: str, ciphertext: str, arity: int) -> None:
        self.call("check_ciphertext", evaluation_key, ciphertext, arity)

    def homomorphic_sum(self, evaluation_key: str, ciphertexts: Sequence[str], arity: int) -> str:
        return self.call("homomorphic_sum", evaluation_key, list(ciphertexts), arity)

    def reveal(self, secret_key: str, aggregate: str) -> list[int]:
        return self.call("reveal", secret_key, aggregate)

    def shutdown(self):
        self._pool.shutdown(wait=False, cancel_futures=True)
