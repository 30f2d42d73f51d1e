"""
Unit tests for credential models and the file-backed credential store.
"""

import asyncio
from unittest.mock import patch

import pytest

from wasession.credentials import FileCredentialStore
from wasession.exceptions import CredentialStoreError
from wasession.models import CredentialUpdate, Credentials


class TestCredentialsModel:
    def test_empty_is_unregistered(self):
        assert Credentials.empty().registered is False

    def test_apply_deep_merges_creds(self):
        creds = Credentials(creds={"me": {"id": "1", "name": "Bot"}, "registered": False})
        updated = creds.apply(CredentialUpdate(creds={"me": {"name": "Bot 2"}, "registered": True}))

        assert updated.creds == {"me": {"id": "1", "name": "Bot 2"}, "registered": True}
        assert creds.creds["me"]["name"] == "Bot"

    def test_apply_sets_and_deletes_keys(self):
        creds = Credentials(keys={"pre-key": {"1": {"k": "a"}, "2": {"k": "b"}}})
        updated = creds.apply(
            CredentialUpdate(keys={"pre-key": {"1": None, "3": {"k": "c"}}, "session": {"x": {}}})
        )

        assert updated.keys == {"pre-key": {"2": {"k": "b"}, "3": {"k": "c"}}, "session": {"x": {}}}
        assert "1" in creds.keys["pre-key"]


class TestFileCredentialStore:
    @pytest.mark.asyncio
    async def test_first_run_returns_empty_state(self, tmp_path):
        store = FileCredentialStore(tmp_path / "auth")

        credentials = await store.load("default")

        assert credentials == Credentials.empty()
        assert (tmp_path / "auth" / "default").is_dir()
        assert await store.exists("default") is False

    @pytest.mark.asyncio
    async def test_save_then_load(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        await store.save(
            "default",
            CredentialUpdate(
                creds={"registered": True, "me": {"id": "5511@s.whatsapp.net"}},
                keys={"pre-key": {"1": {"public": "AAA"}}},
            ),
        )

        loaded = await store.load("default")

        assert loaded.registered
        assert loaded.creds["me"] == {"id": "5511@s.whatsapp.net"}
        assert loaded.keys == {"pre-key": {"1": {"public": "AAA"}}}
        assert await store.exists("default")

    @pytest.mark.asyncio
    async def test_incremental_updates_merge(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        await store.save("s", CredentialUpdate(creds={"me": {"id": "1"}}))
        await store.save("s", CredentialUpdate(creds={"registered": True}))

        loaded = await store.load("s")
        assert loaded.creds == {"registered": True, "me": {"id": "1"}}

    @pytest.mark.asyncio
    async def test_none_value_removes_key_file(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        await store.save("s", CredentialUpdate(keys={"session": {"a": {"v": 1}, "b": {"v": 2}}}))
        await store.save("s", CredentialUpdate(keys={"session": {"a": None}}))

        loaded = await store.load("s")
        assert loaded.keys == {"session": {"b": {"v": 2}}}

    @pytest.mark.asyncio
    async def test_key_ids_with_path_characters_reload_unchanged(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        await store.save(
            "s",
            CredentialUpdate(
                keys={
                    "sender-key": {"g@g.us::1::0": {"v": 1}, "a/b": {"v": 2}},
                    "app-state-sync-key": {"AAAA/bb+c==": {"v": 3}},
                }
            ),
        )

        loaded = await store.load("s")

        assert loaded.keys == {
            "sender-key": {"g@g.us::1::0": {"v": 1}, "a/b": {"v": 2}},
            "app-state-sync-key": {"AAAA/bb+c==": {"v": 3}},
        }
        key_files = [p.name for p in (tmp_path / "s" / "keys" / "sender-key").iterdir()]
        assert all("/" not in name and ":" not in name for name in key_files)

    @pytest.mark.asyncio
    async def test_ids_that_sanitize_alike_do_not_collide(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        await store.save(
            "s", CredentialUpdate(keys={"session": {"a/b": {"v": 1}, "a__b": {"v": 2}}})
        )
        await store.save("s", CredentialUpdate(keys={"session": {"a/b": None}}))

        loaded = await store.load("s")
        assert loaded.keys == {"session": {"a__b": {"v": 2}}}

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        await store.save("s", CredentialUpdate(creds={"registered": True}))

        leftovers = [p.name for p in (tmp_path / "s").iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    @pytest.mark.asyncio
    async def test_corrupt_creds_raise_store_error(self, tmp_path):
        session_dir = tmp_path / "s"
        session_dir.mkdir()
        (session_dir / "creds.json").write_text("{not json", encoding="utf-8")

        store = FileCredentialStore(tmp_path)
        with pytest.raises(CredentialStoreError) as exc_info:
            await store.load("s")
        assert exc_info.value.session_id == "s"

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        await store.save("a", CredentialUpdate(creds={"registered": True}))

        assert (await store.load("b")).registered is False

    @pytest.mark.asyncio
    async def test_exists_checks_disk_in_worker_thread(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        await store.save("s", CredentialUpdate(creds={"registered": True}))

        offloaded = []
        real_to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args):
            offloaded.append(func)
            return await real_to_thread(func, *args)

        with patch("wasession.credentials.asyncio.to_thread", recording_to_thread):
            assert await store.exists("s") is True

        assert len(offloaded) == 1
