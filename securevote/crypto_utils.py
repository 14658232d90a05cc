from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives import serialization, hashes, hmac
from cryptography import x509
from cryptography.x509.oid import NameOID
from datetime import datetime, timedelta, timezone
import base64
import json
import os


BLOB_SEPARATOR = ":"


def sha256_hex(data: bytes) -> str:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize().hex()


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(data)
    return h.finalize()


def load_or_create_secret(secrets_dir: str, name: str) -> bytes:
    os.makedirs(secrets_dir, exist_ok=True)
    path = os.path.join(secrets_dir, f"{name}.txt")
    if not os.path.exists(path):
        # O_EXCL so two workers starting together agree on one secret
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            pass
        else:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(os.urandom(32).hex())
    with open(path, "r", encoding="utf-8") as f:
        return bytes.fromhex(f.read().strip())


# Opaque blobs crossing the HTTP boundary look like "paillier:v1:ciphertext:<b64 json>".
# Only the header is ever read outside the engine.

def pack_blob(scheme: str, version: int, kind: str, payload: dict) -> str:
    body = base64.urlsafe_b64encode(json.dumps(payload, separators=(",", ":")).encode()).decode()
    return BLOB_SEPARATOR.join([scheme, f"v{version}", kind, body])


def read_blob_header(blob: str) -> tuple[str, int, str]:
    parts = blob.split(BLOB_SEPARATOR, 3)
    if len(parts) != 4 or not parts[1].startswith("v") or not parts[1][1:].isdigit():
        raise ValueError("not a tagged blob")
    return parts[0], int(parts[1][1:]), parts[2]


def unpack_blob(blob: str, scheme: str, version: int, kind: str) -> dict:
    got_scheme, got_version, got_kind = read_blob_header(blob)
    if (got_scheme, got_version, got_kind) != (scheme, version, kind):
        raise ValueError(f"expected {scheme}:v{version}:{kind}, got {got_scheme}:v{got_version}:{got_kind}")
    body = blob.split(BLOB_SEPARATOR, 3)[3]
    payload = json.loads(base64.urlsafe_b64decode(body.encode()))
    if not isinstance(payload, dict):
        raise ValueError("blob payload must be an object")
    return payload


def ensure_self_signed_cert(certs_dir: str, common_name: str = "localhost"):
    os.makedirs(certs_dir, exist_ok=True)
    cert_file = os.path.join(certs_dir, "server.crt")
    key_file = os.path.join(certs_dir, "server.key")
    if os.path.exists(cert_file) and os.path.exists(key_file):
        return cert_file, key_file

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "SecureVote"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .sign(key, hashes.SHA256())
    )

    priv_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)

    with open(key_file, "wb") as f:
        f.write(priv_pem)
    os.chmod(key_file, 0o600)
    with open(cert_file, "wb") as f:
        f.write(cert_pem)

    return cert_file, key_file
