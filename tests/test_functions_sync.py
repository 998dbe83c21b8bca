"""
Tests for edge function sync, backup and restore.
"""

import asyncio
import json
from unittest.mock import patch

import pytest

from supamigrate.core.exceptions import PermanentFunctionsError
from supamigrate.functions.client import FunctionBundle, FunctionDescriptor, FunctionFile, FunctionsClient
from supamigrate.functions.sync import FunctionOutcome, FunctionSync, select_functions

HELLO = {"index.ts": b"Deno.serve(() => new Response('hello'))\n", "deps.ts": b"export {}\n"}


class TestFunctionSync:
    """Test moving functions between projects and archives."""

    @pytest.fixture(autouse=True)
    def projects(self, supabase, source_endpoint, target_endpoint, function_options):
        self.supabase = supabase
        self.source_endpoint = source_endpoint
        self.target_endpoint = target_endpoint
        self.source = supabase.functions_of("srcref")
        self.target = supabase.functions_of("dstref")
        self.options = function_options
        self.source.add("hello", HELLO, name="Hello")
        self.source.add("stripe-webhook", {"index.ts": b"// webhook\n"})
        self.source.add("cron-cleanup", {"index.ts": b"// cleanup\n"})

    def _client(self, endpoint):
        return FunctionsClient(endpoint, transport=self.supabase.transport)

    @pytest.mark.asyncio
    async def test_sync_between_projects(self):
        """Test every function is deployed to the target with its files."""
        async with self._client(self.source_endpoint) as src, self._client(self.target_endpoint) as dst:
            result = await FunctionSync(self.options).sync(src, dst)

        assert result.success
        assert result.enumerated == 3
        assert sorted(self.target.functions) == ["cron-cleanup", "hello", "stripe-webhook"]
        assert self.target.functions["hello"].files == HELLO
        assert self.target.functions["hello"].name == "Hello"
        assert [d.slug for d in result.descriptors] == ["cron-cleanup", "hello", "stripe-webhook"]

    @pytest.mark.asyncio
    async def test_sync_name_filter(self):
        async with self._client(self.source_endpoint) as src, self._client(self.target_endpoint) as dst:
            result = await FunctionSync(self.options).sync(src, dst, names=["hello", "cron-*"])

        assert [r.slug for r in result.results] == ["cron-cleanup", "hello"]
        assert "stripe-webhook" not in self.target.functions

    @pytest.mark.asyncio
    async def test_rejected_deploy_does_not_stop_others(self):
        """Test a bundle the target rejects is recorded and the rest deploy."""
        self.target.fail("POST", "/functions/deploy", 400)

        async with self._client(self.source_endpoint) as src, self._client(self.target_endpoint) as dst:
            result = await FunctionSync(self.options).sync(src, dst)

        assert result.failed == 1
        assert result.succeeded == 2
        assert not result.success
        failure = result.failures[0]
        assert failure.outcome == FunctionOutcome.FAILED
        assert failure.kind == "permanent"
        assert "HTTP 400" in failure.error
        assert len(self.target.deploys) == 2

    @pytest.mark.asyncio
    async def test_transient_download_retried(self):
        """Test a 503 from the management API is retried."""
        self.source.fail("GET", "/functions/hello/body", 503)

        async with self._client(self.source_endpoint) as src, self._client(self.target_endpoint) as dst:
            result = await FunctionSync(self.options).sync(src, dst, names=["hello"])

        assert result.success
        assert result.results[0].attempts == 3  # two downloads and one deploy

    @pytest.mark.asyncio
    async def test_backup_then_restore(self, tmp_path):
        """Test functions survive a round trip through a directory."""
        async with self._client(self.source_endpoint) as src:
            backup = await FunctionSync(self.options).backup(src, tmp_path)

        assert backup.success
        metadata = json.loads((tmp_path / "hello" / "metadata.json").read_text())
        assert metadata["name"] == "Hello"
        assert (tmp_path / "hello" / "src" / "deps.ts").read_bytes() == HELLO["deps.ts"]

        async with self._client(self.target_endpoint) as dst:
            restore = await FunctionSync(self.options).restore(tmp_path, dst)

        assert restore.success
        assert [r.slug for r in restore.results] == ["cron-cleanup", "hello", "stripe-webhook"]
        assert self.target.functions["hello"].files == HELLO

    @pytest.mark.asyncio
    async def test_bundle_files_handled_in_threads(self, tmp_path):
        """Test bundles are saved and loaded outside the event loop."""
        with patch.object(asyncio, "to_thread", wraps=asyncio.to_thread) as to_thread:
            async with self._client(self.source_endpoint) as src:
                await FunctionSync(self.options).backup(src, tmp_path, names=["hello"])
            async with self._client(self.target_endpoint) as dst:
                await FunctionSync(self.options).restore(tmp_path, dst)

        offloaded = [getattr(c.args[0], "__func__", c.args[0]) for c in to_thread.call_args_list]
        assert FunctionBundle.save in offloaded
        assert FunctionBundle.load.__func__ in offloaded
        assert self.target.functions["hello"].files == HELLO

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        cancel_event = asyncio.Event()
        cancel_event.set()
        async with self._client(self.source_endpoint) as src, self._client(self.target_endpoint) as dst:
            result = await FunctionSync(self.options, cancel_event=cancel_event).sync(src, dst)

        assert result.cancelled
        assert result.failed == 3
        assert all(r.kind == "cancelled" for r in result.results)
        assert self.target.deploys == []


class TestFunctionBundle:
    """Test bundle layout on disk."""

    def test_legacy_flat_layout(self, tmp_path):
        """Test bundles without a src directory still load."""
        directory = tmp_path / "hello"
        directory.mkdir()
        (directory / "metadata.json").write_text(json.dumps({"name": "Hello"}))
        (directory / "index.ts").write_bytes(b"// hi\n")

        bundle = FunctionBundle.load(directory)

        assert bundle.slug == "hello"
        assert [f.name for f in bundle.files] == ["index.ts"]

    @pytest.mark.asyncio
    async def test_empty_bundle_rejected(self, supabase, target_endpoint):
        bundle = FunctionBundle(descriptor=FunctionDescriptor(slug="empty", name="empty"))
        async with FunctionsClient(target_endpoint, transport=supabase.transport) as client:
            with pytest.raises(PermanentFunctionsError):
                await client.upload_function(bundle)

    def test_entrypoint_from_descriptor(self):
        bundle = FunctionBundle(
            descriptor=FunctionDescriptor(slug="a", name="a", entrypoint_path="file:///src/main.ts"),
            files=[FunctionFile("main.ts", b"")],
        )
        assert bundle.entrypoint == "main.ts"

    def test_select_functions(self):
        descriptors = [FunctionDescriptor(slug=s, name=s) for s in ("b", "a", "c-1")]
        assert [d.slug for d in select_functions(descriptors, None)] == ["a", "b", "c-1"]
        assert [d.slug for d in select_functions(descriptors, ["c-*"])] == ["c-1"]
