"""
Management API client for edge functions.
"""

import io
import json
import logging
import tarfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

import httpx

from supamigrate.core.error_handler import functions_error_from_exception, functions_error_from_response
from supamigrate.core.exceptions import PermanentFunctionsError
from supamigrate.models.config import ProjectEndpoint
from supamigrate.utils.helpers import atomic_write_bytes, atomic_write_text, safe_object_path

logger = logging.getLogger(__name__)

DEFAULT_ENTRYPOINT = "index.ts"
METADATA_FILE = "metadata.json"
SOURCE_DIR = "src"


@dataclass
class FunctionDescriptor:
    """An edge function as listed by the management API."""
    slug: str
    name: str
    version: Optional[int] = None
    status: Optional[str] = None
    verify_jwt: bool = True
    entrypoint_path: Optional[str] = None
    import_map_path: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "FunctionDescriptor":
        return cls(
            slug=data["slug"],
            name=data.get("name") or data["slug"],
            version=data.get("version"),
            status=data.get("status"),
            verify_jwt=bool(data.get("verify_jwt", True)),
            entrypoint_path=data.get("entrypoint_path"),
            import_map_path=data.get("import_map_path"),
        )

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "name": self.name,
            "version": self.version,
            "verify_jwt": self.verify_jwt,
            "entrypoint_path": self.entrypoint_path,
            "import_map_path": self.import_map_path,
        }


@dataclass
class FunctionFile:
    name: str
    content: bytes


@dataclass
class FunctionBundle:
    """A function's metadata together with its source files."""
    descriptor: FunctionDescriptor
    files: List[FunctionFile] = field(default_factory=list)

    @property
    def slug(self) -> str:
        return self.descriptor.slug

    @property
    def entrypoint(self) -> str:
        if self.descriptor.entrypoint_path:
            return PurePosixPath(self.descriptor.entrypoint_path).name
        return DEFAULT_ENTRYPOINT

    def save(self, directory: Path) -> Path:
        """Write the bundle to ``directory/<slug>``."""
        target = safe_object_path(Path(directory), self.slug)
        for f in self.files:
            atomic_write_bytes(safe_object_path(target / SOURCE_DIR, f.name), f.content)
        atomic_write_text(target / METADATA_FILE, json.dumps(self.descriptor.to_metadata(), indent=2))
        return target

    @classmethod
    def load(cls, directory: Path) -> "FunctionBundle":
        """
        Read a bundle written by :meth:`save`.

        Older archives keep the source files next to metadata.json instead of
        in a ``src`` directory; both layouts are accepted.
        """
        directory = Path(directory)
        meta_path = directory / METADATA_FILE
        try:
            metadata = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PermanentFunctionsError(f"Unreadable function metadata {meta_path}: {e}")

        metadata.setdefault("slug", directory.name)
        descriptor = FunctionDescriptor.from_api(metadata)

        source_root = directory / SOURCE_DIR
        if not source_root.is_dir():
            source_root = directory
        files = [
            FunctionFile(name=path.relative_to(source_root).as_posix(), content=path.read_bytes())
            for path in sorted(source_root.rglob("*"))
            if path.is_file() and not (source_root == directory and path == meta_path)
        ]
        return cls(descriptor=descriptor, files=files)


def extract_bundle_files(data: bytes, entrypoint: str = DEFAULT_ENTRYPOINT) -> List[FunctionFile]:
    """Unpack a gzip tarball body; anything else is a single source file."""
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
            files = []
            for member in archive.getmembers():
                if not member.isfile():
                    continue
                name = PurePosixPath(member.name.lstrip("/"))
                if ".." in name.parts:
                    continue
                extracted = archive.extractfile(member)
                if extracted is not None:
                    files.append(FunctionFile(name=name.as_posix(), content=extracted.read()))
            return files
    except (tarfile.TarError, OSError, EOFError):
        return [FunctionFile(name=entrypoint, content=data)]


class FunctionsClient:
    """Edge function operations of one project through the management API."""

    def __init__(
        self,
        endpoint: ProjectEndpoint,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        token = endpoint.require_management_token()
        self.project_ref = endpoint.project_ref
        self._client = httpx.AsyncClient(
            base_url=f"{endpoint.management_api_url}/v1/projects/{endpoint.project_ref}",
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def _request(self, method: str, url: str, action: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise functions_error_from_exception(e, action)
        if response.status_code >= 400:
            raise functions_error_from_response(response, action)
        return response

    async def list_functions(self) -> List[FunctionDescriptor]:
        response = await self._request("GET", "/functions", f"List functions of {self.project_ref}")
        return [FunctionDescriptor.from_api(item) for item in response.json()]

    async def download_function(self, descriptor: FunctionDescriptor) -> FunctionBundle:
        slug = descriptor.slug
        response = await self._request(
            "GET",
            f"/functions/{slug}/body",
            f"Download function {slug}",
            headers={"Accept": "application/octet-stream"},
        )
        content_type = response.headers.get("content-type", "")
        bundle = FunctionBundle(descriptor=descriptor)
        if "application/json" in content_type:
            body = response.json()
            source = body.get("body")
            if source is not None:
                name = body.get("entrypoint_path") or descriptor.entrypoint_path or DEFAULT_ENTRYPOINT
                bundle.files.append(FunctionFile(
                    name=PurePosixPath(name).name,
                    content=source.encode("utf-8"),
                ))
        else:
            bundle.files = extract_bundle_files(response.content, bundle.entrypoint)
        logger.debug(f"Downloaded function {slug}: {len(bundle.files)} files")
        return bundle

    async def upload_function(self, bundle: FunctionBundle) -> None:
        """Deploy ``bundle``, creating or updating the function."""
        if not bundle.files:
            raise PermanentFunctionsError(f"Function {bundle.slug} has no source files")
        descriptor = bundle.descriptor
        metadata = {
            "name": descriptor.name,
            "entrypoint_path": descriptor.entrypoint_path or bundle.entrypoint,
            "verify_jwt": descriptor.verify_jwt,
        }
        if descriptor.import_map_path:
            metadata["import_map_path"] = descriptor.import_map_path

        await self._request(
            "POST",
            "/functions/deploy",
            f"Deploy function {bundle.slug}",
            params={"slug": bundle.slug},
            data={"metadata": json.dumps(metadata)},
            files=[("file", (f.name, f.content, "application/octet-stream")) for f in bundle.files],
        )
        logger.debug(f"Deployed function {bundle.slug}")
