import re

import pytest

from payshare.ledger import DuplicateKey, MemoryLedgerStore, generate_share_token
from payshare.ledger import memory, sql

from tests.helpers import make_file, make_user

URL_SAFE = re.compile(r"^[A-Za-z0-9_-]+$")


def test_token_has_requested_length_and_alphabet():
    for length in (10, 16, 43):
        token = generate_share_token(length)
        assert len(token) == length
        assert URL_SAFE.match(token)


def test_default_token_length():
    assert len(generate_share_token()) == 10


def test_short_tokens_are_rejected():
    with pytest.raises(ValueError):
        generate_share_token(8)


def test_generated_tokens_do_not_collide():
    tokens = {generate_share_token() for _ in range(10_000)}
    assert len(tokens) == 10_000


def test_store_rejects_short_token_configuration():
    with pytest.raises(ValueError):
        MemoryLedgerStore(share_token_length=6)


async def test_created_files_have_unique_share_tokens():
    ledger = MemoryLedgerStore()
    owner = await make_user(ledger)

    files = [await make_file(ledger, owner.id, f"file {i}") for i in range(10_000)]

    assert len({f.share_token for f in files}) == 10_000


@pytest.fixture
def scripted_tokens(monkeypatch):
    def install(*tokens):
        queue = list(tokens)
        fake = lambda length=10: queue.pop(0)
        monkeypatch.setattr(memory, "generate_share_token", fake)
        monkeypatch.setattr(sql, "generate_share_token", fake)
    return install


async def test_colliding_token_is_regenerated(ledger, scripted_tokens):
    owner = await make_user(ledger)
    scripted_tokens("AAAAAAAAAA", "AAAAAAAAAA", "BBBBBBBBBB")

    first = await make_file(ledger, owner.id, "first")
    second = await make_file(ledger, owner.id, "second")

    assert first.share_token == "AAAAAAAAAA"
    assert second.share_token == "BBBBBBBBBB"


async def test_persistent_collisions_give_up(ledger, scripted_tokens):
    owner = await make_user(ledger)
    scripted_tokens(*["AAAAAAAAAA"] * 10)
    await make_file(ledger, owner.id, "first")

    with pytest.raises(DuplicateKey):
        await make_file(ledger, owner.id, "second")
