import time

import jwt
import pytest

from src.codecanvas.domain.errors import ObjectNotFound, StorageError
from src.codecanvas.infrastructure.object_storage import InMemoryObjectStorage, LocalObjectStorage, UrlSigner


@pytest.fixture
def signer():
    return UrlSigner(secret="s3cret", base_url="http://cdn.local")


def test_signed_url_verifies_for_its_key_only(signer):
    url = signer.url_for("code-artifacts/code/a b.js", 60)
    assert url.startswith("http://cdn.local/files/code-artifacts/code/a%20b.js?token=")
    token = url.split("token=", 1)[1]
    assert signer.verify(token, "code-artifacts/code/a b.js")
    assert not signer.verify(token, "code-artifacts/code/other.js")
    assert not UrlSigner(secret="other").verify(token, "code-artifacts/code/a b.js")


def test_expired_token_is_rejected(signer):
    token = jwt.encode({"key": "k", "exp": int(time.time()) - 5}, "s3cret", algorithm="HS256")
    assert not signer.verify(token, "k")
    assert not signer.verify("not-a-token", "k")


@pytest.mark.asyncio
async def test_local_storage_round_trip(tmp_path, signer):
    storage = LocalObjectStorage(tmp_path, signer)
    await storage.put("code/2024-01-01/abc.js", b"console.log(1)")
    assert (tmp_path / "code" / "2024-01-01" / "abc.js").read_bytes() == b"console.log(1)"
    assert not list(tmp_path.rglob("*.part"))
    assert await storage.get("code/2024-01-01/abc.js") == b"console.log(1)"
    await storage.delete("code/2024-01-01/abc.js")
    with pytest.raises(ObjectNotFound):
        await storage.get("code/2024-01-01/abc.js")
    assert storage.puts == 1


@pytest.mark.asyncio
async def test_local_storage_rejects_escaping_keys(tmp_path, signer):
    storage = LocalObjectStorage(tmp_path / "root", signer)
    with pytest.raises(StorageError):
        await storage.put("../outside.js", b"x")


@pytest.mark.asyncio
async def test_memory_storage_missing_key(signer):
    storage = InMemoryObjectStorage(signer)
    with pytest.raises(ObjectNotFound) as excinfo:
        await storage.get("nope")
    assert excinfo.value.key == "nope"
    await storage.put("yes", b"1", {"hash": "h"})
    assert storage.keys() == ["yes"]
    assert storage.metadata("yes") == {"hash": "h"}
