from concurrent.futures import ThreadPoolExecutor

import pytest

from securevote.errors import ValidationError
from securevote.models import VoterToken
from securevote.tokens import TokenRegistry, token_hash


def test_issue_is_idempotent(db, tokens):
    first = tokens.issue_or_fetch(db, "v1")
    second = tokens.issue_or_fetch(db, "v1")
    assert first == second
    assert first.startswith("tok_")
    assert db.query(VoterToken).count() == 1


def test_distinct_identities_get_distinct_tokens(db, tokens):
    issued = {tokens.issue_or_fetch(db, f"voter-{i}") for i in range(20)}
    assert len(issued) == 20


def test_surrounding_whitespace_is_ignored(db, tokens):
    assert tokens.issue_or_fetch(db, "  v1 ") == tokens.issue_or_fetch(db, "v1")


@pytest.mark.parametrize("identity", ["", "   ", None, "a\nb", "x" * 300])
def test_malformed_identity_is_rejected(db, tokens, identity):
    with pytest.raises(ValidationError):
        tokens.issue_or_fetch(db, identity)
    assert db.query(VoterToken).count() == 0


def test_identity_is_not_stored(db, tokens):
    token = tokens.issue_or_fetch(db, "alice@example.org")
    row = db.query(VoterToken).one()
    assert row.token_hash == token_hash(token)
    assert "alice" not in row.token_hash


def test_tokens_depend_on_the_registry_secret():
    assert TokenRegistry(b"a" * 32).derive("v1") != TokenRegistry(b"b" * 32).derive("v1")


def test_recognition(db, tokens):
    token = tokens.issue_or_fetch(db, "v1")
    assert tokens.is_recognized(db, token)
    assert not tokens.is_recognized(db, tokens.derive("never-issued"))
    assert not tokens.is_recognized(db, "garbage")
    assert not tokens.is_recognized(db, None)


def test_concurrent_first_issuance_yields_one_token(session_factory, tokens):
    def issue(_):
        with session_factory() as session:
            return tokens.issue_or_fetch(session, "racer")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(issue, range(16)))

    assert len(set(results)) == 1
    with session_factory() as session:
        assert session.query(VoterToken).count() == 1
