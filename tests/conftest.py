"""
Pytest configuration and fixtures for the Supamigrate tests.

The storage API and the management API are served from memory through
httpx.MockTransport, and pg_dump/psql are replaced by fake processes, so
every pipeline runs end to end without network access or PostgreSQL.
"""

import asyncio
import email.parser
import email.policy
import hashlib
import io
import json
import tarfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import patch

import httpx
import pytest

from supamigrate.models.config import DatabaseDescriptor, DefaultsConfig, ProjectEndpoint, SupamigrateConfig
from supamigrate.transfer.engine import TransferOptions
from supamigrate.core.error_handler import create_functions_retry_config, create_transfer_retry_config
from supamigrate.functions.sync import FunctionSyncOptions

MANAGEMENT_HOST = "api.supabase.com"


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def _error(status: int, message: str) -> httpx.Response:
    """The storage API reports most errors as 400 with the real status in the body."""
    return httpx.Response(400, json={"statusCode": str(status), "error": message, "message": message})


class FakeStorageAPI:
    """In-memory storage API of one project."""

    def __init__(self, service_key: str):
        self.service_key = service_key
        self.buckets: Dict[str, bool] = {}
        self.objects: Dict[str, Dict[str, bytes]] = {}
        self.content_types: Dict[Tuple[str, str], str] = {}
        self.faults: Dict[Tuple[str, str], List[int]] = {}
        self.bad_etags: set = set()
        self.requests: List[Tuple[str, str]] = []

    # Test setup helpers

    def add_bucket(self, name: str, public: bool = False) -> None:
        self.buckets[name] = public
        self.objects.setdefault(name, {})

    def put(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        if bucket not in self.buckets:
            self.add_bucket(bucket)
        self.objects[bucket][key] = data
        if content_type:
            self.content_types[(bucket, key)] = content_type

    def fail(self, method: str, path: str, *statuses: int) -> None:
        """Answer the next requests to ``path`` with the given statuses."""
        self.faults.setdefault((method, path), []).extend(statuses)

    def count(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r == (method, path))

    # Request handling

    def handle(self, request: httpx.Request, path: str) -> httpx.Response:
        self.requests.append((request.method, path))
        if request.headers.get("authorization") != f"Bearer {self.service_key}":
            return httpx.Response(401, json={"message": "invalid signature"})

        queued = self.faults.get((request.method, path))
        if queued:
            return httpx.Response(queued.pop(0), json={"message": "injected failure"})

        if path == "/bucket":
            if request.method == "GET":
                return httpx.Response(200, json=[
                    {"id": name, "name": name, "public": public}
                    for name, public in sorted(self.buckets.items())
                ])
            body = json.loads(request.content)
            if body["name"] in self.buckets:
                return _error(409, "Duplicate")
            self.add_bucket(body["name"], bool(body.get("public")))
            return httpx.Response(200, json={"name": body["name"]})

        if path.startswith("/object/list/"):
            return self._list(path[len("/object/list/"):], json.loads(request.content))

        if path.startswith("/object/"):
            bucket, _, key = path[len("/object/"):].partition("/")
            if request.method == "HEAD":
                return self._head(bucket, key)
            if request.method == "GET":
                return self._get(bucket, key)
            if request.method == "POST":
                return self._upload(request, bucket, key)

        return httpx.Response(404, json={"message": f"no route for {request.method} {path}"})

    def _etag(self, bucket: str, key: str) -> str:
        if (bucket, key) in self.bad_etags:
            return '"' + "0" * 32 + '"'
        return f'"{md5_hex(self.objects[bucket][key])}"'

    def _list(self, bucket: str, body: Dict[str, Any]) -> httpx.Response:
        if bucket not in self.buckets:
            return _error(404, "Bucket not found")
        prefix = body.get("prefix", "")
        files: Dict[str, str] = {}
        folders = set()
        for key in self.objects[bucket]:
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix):]
            if "/" in rest:
                folders.add(rest.split("/", 1)[0])
            else:
                files[rest] = key

        entries = [{"name": name, "id": None, "metadata": None} for name in folders]
        for name, key in files.items():
            data = self.objects[bucket][key]
            entries.append({
                "name": name,
                "id": f"id-{md5_hex(key.encode())[:8]}",
                "metadata": {
                    "size": len(data),
                    "eTag": self._etag(bucket, key),
                    "mimetype": self.content_types.get((bucket, key), "application/octet-stream"),
                },
            })
        entries.sort(key=lambda e: e["name"])
        offset, limit = body.get("offset", 0), body.get("limit", 100)
        return httpx.Response(200, json=entries[offset:offset + limit])

    def _head(self, bucket: str, key: str) -> httpx.Response:
        if key not in self.objects.get(bucket, {}):
            return httpx.Response(400)
        return httpx.Response(200, headers={
            "content-length": str(len(self.objects[bucket][key])),
            "etag": self._etag(bucket, key),
            "content-type": self.content_types.get((bucket, key), "application/octet-stream"),
        })

    def _get(self, bucket: str, key: str) -> httpx.Response:
        if key not in self.objects.get(bucket, {}):
            return _error(404, "Object not found")
        return httpx.Response(
            200,
            content=self.objects[bucket][key],
            headers={
                "etag": self._etag(bucket, key),
                "content-type": self.content_types.get((bucket, key), "application/octet-stream"),
            },
        )

    def _upload(self, request: httpx.Request, bucket: str, key: str) -> httpx.Response:
        if bucket not in self.buckets:
            return _error(404, "Bucket not found")
        if request.headers.get("x-upsert") != "true" and key in self.objects[bucket]:
            return _error(409, "Duplicate")
        self.objects[bucket][key] = request.content
        self.content_types[(bucket, key)] = request.headers.get("content-type", "application/octet-stream")
        return httpx.Response(200, json={"Key": f"{bucket}/{key}"})


def make_bundle_body(files: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in sorted(files.items()):
            info = tarfile.TarInfo(name)
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


@dataclass
class FakeFunction:
    slug: str
    name: str
    files: Dict[str, bytes]
    entrypoint_path: str = "index.ts"
    verify_jwt: bool = True
    version: int = 1


class FakeFunctionsAPI:
    """In-memory edge function endpoints of one project's management API."""

    def __init__(self, token: str):
        self.token = token
        self.functions: Dict[str, FakeFunction] = {}
        self.faults: Dict[Tuple[str, str], List[int]] = {}
        self.deploys: List[str] = []

    def add(self, slug: str, files: Dict[str, bytes], name: Optional[str] = None) -> None:
        self.functions[slug] = FakeFunction(slug=slug, name=name or slug, files=dict(files))

    def fail(self, method: str, path: str, *statuses: int) -> None:
        self.faults.setdefault((method, path), []).extend(statuses)

    def handle(self, request: httpx.Request, path: str) -> httpx.Response:
        if request.headers.get("authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"message": "Unauthorized"})
        queued = self.faults.get((request.method, path))
        if queued:
            return httpx.Response(queued.pop(0), json={"message": "injected failure"})

        if path == "/functions" and request.method == "GET":
            return httpx.Response(200, json=[
                {
                    "slug": f.slug,
                    "name": f.name,
                    "version": f.version,
                    "status": "ACTIVE",
                    "verify_jwt": f.verify_jwt,
                    "entrypoint_path": f.entrypoint_path,
                }
                for f in sorted(self.functions.values(), key=lambda f: f.slug)
            ])
        if path == "/functions/deploy" and request.method == "POST":
            return self._deploy(request)
        if path.startswith("/functions/") and path.endswith("/body"):
            slug = path[len("/functions/"):-len("/body")]
            if slug not in self.functions:
                return httpx.Response(404, json={"message": "Function not found"})
            return httpx.Response(
                200,
                content=make_bundle_body(self.functions[slug].files),
                headers={"content-type": "application/octet-stream"},
            )
        return httpx.Response(404, json={"message": f"no route for {request.method} {path}"})

    def _deploy(self, request: httpx.Request) -> httpx.Response:
        slug = request.url.params["slug"]
        raw = b"Content-Type: " + request.headers["content-type"].encode() + b"\r\n\r\n" + request.content
        message = email.parser.BytesParser(policy=email.policy.default).parsebytes(raw)
        metadata: Dict[str, Any] = {}
        files: Dict[str, bytes] = {}
        for part in message.iter_parts():
            name = part.get_param("name", header="content-disposition")
            payload = part.get_payload(decode=True)
            if name == "metadata":
                metadata = json.loads(payload)
            elif name == "file":
                files[part.get_filename()] = payload

        existing = self.functions.get(slug)
        self.functions[slug] = FakeFunction(
            slug=slug,
            name=metadata.get("name", slug),
            files=files,
            entrypoint_path=metadata.get("entrypoint_path", "index.ts"),
            verify_jwt=metadata.get("verify_jwt", True),
            version=existing.version + 1 if existing else 1,
        )
        self.deploys.append(slug)
        return httpx.Response(201, json={"slug": slug, "version": self.functions[slug].version})


class FakeSupabase:
    """Routes requests to per-project fakes by host (storage) or project ref (management API)."""

    def __init__(self):
        self.storage: Dict[str, FakeStorageAPI] = {}
        self.functions: Dict[str, FakeFunctionsAPI] = {}
        self.transport = httpx.MockTransport(self.handle)

    def project(self, ref: str, database: bool = True, storage: bool = True, functions: bool = True) -> ProjectEndpoint:
        service_key = f"{ref}-service-role-key"
        token = f"sbp_{ref}_management_token"
        self.storage[f"{ref}.supabase.co"] = FakeStorageAPI(service_key)
        self.functions[ref] = FakeFunctionsAPI(token)
        return ProjectEndpoint(
            project_ref=ref,
            database=DatabaseDescriptor(
                host=f"db.{ref}.supabase.co",
                port=5432,
                user="postgres",
                database="postgres",
                password=f"{ref}-db-password",
                sslmode="require",
            ) if database else None,
            api_url=f"https://{ref}.supabase.co",
            service_key=service_key if storage else None,
            management_token=token if functions else None,
            management_api_url=f"https://{MANAGEMENT_HOST}",
        )

    def storage_of(self, ref: str) -> FakeStorageAPI:
        return self.storage[f"{ref}.supabase.co"]

    def functions_of(self, ref: str) -> FakeFunctionsAPI:
        return self.functions[ref]

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.url.host == MANAGEMENT_HOST:
            prefix = "/v1/projects/"
            ref, _, rest = path[len(prefix):].partition("/")
            api = self.functions.get(ref)
            if api is None:
                return httpx.Response(404, json={"message": "Project not found"})
            return api.handle(request, "/" + rest)

        api = self.storage.get(request.url.host)
        if api is None or not path.startswith("/storage/v1"):
            return httpx.Response(404, json={"message": "Unknown host"})
        return api.handle(request, path[len("/storage/v1"):])


class FakeStdin:
    def __init__(self):
        self.buffer = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        self.buffer.extend(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


def _reader(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    if data:
        reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class FakeProcess:
    """Stands in for a pg_dump or psql child process."""

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0, stall: bool = False):
        self.stdin = FakeStdin()
        # a stalled process never closes its output
        self.stdout = _reader(stdout, eof=not stall)
        self.stderr = _reader(stderr, eof=not stall)
        self._exit_code = returncode
        self.returncode: Optional[int] = None
        self.killed = False

    async def wait(self) -> int:
        if self.returncode is None:
            self.returncode = self._exit_code
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


@dataclass
class SpawnCall:
    executable: str
    args: List[str]
    env: Dict[str, str]


@dataclass
class FakeSpawner:
    """Replaces ``spawn`` in the dump and restore drivers."""
    scripts: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    calls: List[SpawnCall] = field(default_factory=list)
    processes: List[FakeProcess] = field(default_factory=list)

    def queue(self, executable: str, **kwargs) -> None:
        self.scripts.setdefault(executable, []).append(kwargs)

    def stdin_of(self, executable: str) -> str:
        for call, process in zip(self.calls, self.processes):
            if call.executable == executable:
                return process.stdin.buffer.decode("utf-8")
        raise AssertionError(f"{executable} was never started")

    def executables(self) -> List[str]:
        return [call.executable for call in self.calls]

    async def __call__(self, executable: str, args: List[str], env: Dict[str, str], **kwargs) -> FakeProcess:
        script = self.scripts.get(executable) or []
        process = FakeProcess(**(script.pop(0) if script else {}))
        self.calls.append(SpawnCall(executable, list(args), dict(env)))
        self.processes.append(process)
        return process


SAMPLE_DUMP = """--
-- PostgreSQL database dump
--

SET statement_timeout = 0;
SET client_encoding = 'UTF8';

DROP SCHEMA IF EXISTS "auth" CASCADE;
CREATE SCHEMA "auth";

CREATE EXTENSION IF NOT EXISTS "pgcrypto" WITH SCHEMA "extensions";
CREATE EXTENSION "pg_graphql" WITH SCHEMA "graphql";
COMMENT ON EXTENSION "pg_graphql" IS 'GraphQL support';

CREATE TABLE "public"."users" (
    "id" bigint NOT NULL,
    "name" "text" DEFAULT 'a;b'::"text"
);

ALTER TABLE "public"."users" OWNER TO "supabase_admin";

CREATE FUNCTION "public"."touch"() RETURNS "trigger"
    LANGUAGE "plpgsql"
    AS $$
BEGIN
  NEW.updated_at := now();
  RETURN NEW;
END;
$$;

ALTER FUNCTION "public"."touch"() OWNER TO "postgres";

COPY "public"."users" ("id", "name") FROM stdin;
1\talice
2\tbob; robert
\\.

GRANT ALL ON TABLE "public"."users" TO "anon";
GRANT ALL ON TABLE "public"."users" TO "legacy_reporting";
ALTER DEFAULT PRIVILEGES FOR ROLE "supabase_admin" IN SCHEMA "public" GRANT ALL ON TABLES TO "postgres";
CREATE ROLE "legacy_reporting";
"""


@pytest.fixture
def supabase() -> FakeSupabase:
    """In-memory storage and management APIs."""
    return FakeSupabase()


@pytest.fixture
def source_endpoint(supabase: FakeSupabase) -> ProjectEndpoint:
    return supabase.project("srcref")


@pytest.fixture
def target_endpoint(supabase: FakeSupabase) -> ProjectEndpoint:
    return supabase.project("dstref")


@pytest.fixture
def fast_defaults() -> DefaultsConfig:
    """Defaults without backoff delays."""
    return DefaultsConfig(retry_base_delay=0.0, parallel_transfers=2)


@pytest.fixture
def fast_config(fast_defaults: DefaultsConfig) -> SupamigrateConfig:
    return SupamigrateConfig(defaults=fast_defaults)


@pytest.fixture
def transfer_options() -> TransferOptions:
    return TransferOptions(concurrency=2, retry=create_transfer_retry_config(3, 0.0))


@pytest.fixture
def function_options() -> FunctionSyncOptions:
    return FunctionSyncOptions(concurrency=2, retry=create_functions_retry_config(3, 0.0))


@pytest.fixture
def fake_spawn():
    """Fake pg_dump/psql processes for both database drivers."""
    spawner = FakeSpawner()
    with patch("supamigrate.database.dump.spawn", spawner), \
            patch("supamigrate.database.restore.spawn", spawner):
        yield spawner


@pytest.fixture
def sample_dump() -> str:
    return SAMPLE_DUMP
