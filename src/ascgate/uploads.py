"""Three-phase asset upload: reserve, transfer byte ranges, commit.

The reserve call returns a plan of upload operations pointing at
pre-authorized destinations. Those transfers go through ``raw_request`` and
never carry the API bearer token. The commit call sends the MD5 of the
whole payload so the server can verify what it assembled.
"""

import asyncio
import base64
import hashlib
import logging
import os
from typing import Any, Union

from .client import AsyncClient, Client
from .errors import ApiFailure, SizeMismatch, UploadFailure, ValidationFailure
from .types import UploadOperation


def checksum(data: bytes) -> str:
    """Base64-encoded MD5 digest, as expected by the commit call."""
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")  # noqa: S324


def read_payload(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise UploadFailure(
            f"Failed to read file: {path}", code="FILE_READ_ERROR", status=400, phase="read"
        ) from e


class _UploadProtocol:
    def __init__(
        self,
        asset_type: str = "appScreenshots",
        set_type: str = "appScreenshotSets",
        set_relationship: str = "appScreenshotSet",
    ):
        self.asset_type = asset_type
        self.set_type = set_type
        self.set_relationship = set_relationship
        self._logger = logging.getLogger("ascgate")

    @staticmethod
    def _check_size(source: bytes, declared_size: int) -> None:
        if declared_size < 0:
            raise ValidationFailure("declared size must be non-negative", field="fileSize")
        if len(source) != declared_size:
            raise SizeMismatch(declared_size, len(source))

    def _reserve_body(self, file_name: str, size: int, set_id: str) -> dict[str, Any]:
        return {
            "data": {
                "type": self.asset_type,
                "attributes": {"fileName": file_name, "fileSize": size},
                "relationships": {
                    self.set_relationship: {"data": {"type": self.set_type, "id": set_id}}
                },
            }
        }

    def _commit_body(self, asset_id: str, digest: str) -> dict[str, Any]:
        return {
            "data": {
                "type": self.asset_type,
                "id": asset_id,
                "attributes": {"sourceFileChecksum": digest, "uploaded": True},
            }
        }

    def _plan(self, reserved: Any, size: int) -> tuple[str, list[UploadOperation]]:
        """Asset id and ordered upload operations from the reserve response."""
        data = reserved.get("data") if isinstance(reserved, dict) else None
        if not isinstance(data, dict) or not data.get("id"):
            raise UploadFailure("Reserve response carries no asset id", phase="reserve")
        raw_ops = (data.get("attributes") or {}).get("uploadOperations")
        if not raw_ops:
            raise UploadFailure("No upload operations provided", phase="reserve")
        try:
            ops = [
                UploadOperation(
                    method=op["method"],
                    url=op["url"],
                    offset=int(op["offset"]),
                    length=int(op["length"]),
                    request_headers=tuple(
                        (h["name"], h["value"]) for h in op.get("requestHeaders") or ()
                    ),
                )
                for op in raw_ops
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise UploadFailure(f"Malformed upload operation: {e!r}", phase="reserve") from e
        self._check_partition(ops, size)
        return data["id"], ops

    @staticmethod
    def _check_partition(ops: list[UploadOperation], size: int) -> None:
        # ranges must tile [0, size) exactly; they are still sent in server order
        cursor = 0
        for op in sorted(ops, key=lambda o: o.offset):
            if op.length <= 0 or op.offset != cursor:
                raise UploadFailure(
                    f"Upload operations do not cover the payload contiguously at byte {cursor}",
                    phase="reserve",
                )
            cursor = op.end
        if cursor != size:
            raise UploadFailure(
                f"Upload operations cover {cursor} bytes, payload has {size}", phase="reserve"
            )

    @staticmethod
    def _phase_failure(phase: str, error: ApiFailure) -> UploadFailure:
        return UploadFailure(f"Upload {phase} failed: {error}", status=error.status, phase=phase)

    @staticmethod
    def _transfer_failed(index: int, status: int) -> UploadFailure:
        return UploadFailure(
            f"Chunk upload failed: {status} (operation {index})", status=status, phase="transfer"
        )


# ---------- Sync uploader ----------


class AssetUploader(_UploadProtocol):
    def __init__(self, client: Client, **kwargs):
        super().__init__(**kwargs)
        self.client = client

    def upload(self, source: bytes, declared_size: int, file_name: str, set_id: str) -> Any:
        self._check_size(source, declared_size)

        try:
            reserved = self.client.post(
                f"/{self.asset_type}", self._reserve_body(file_name, declared_size, set_id)
            )
        except ApiFailure as e:
            raise self._phase_failure("reserve", e) from e
        asset_id, ops = self._plan(reserved, declared_size)
        self._logger.debug(f"upload reserved asset={asset_id} operations={len(ops)}")

        for index, op in enumerate(ops):
            try:
                resp = self.client.raw_request(
                    op.url, op.method, headers=op.headers(), body=source[op.offset : op.end]
                )
            except ApiFailure as e:
                raise self._phase_failure("transfer", e) from e
            if not 200 <= resp.status_code < 300:  # noqa: PLR2004
                raise self._transfer_failed(index, resp.status_code)

        try:
            committed = self.client.patch(
                f"/{self.asset_type}/{asset_id}", self._commit_body(asset_id, checksum(source))
            )
        except ApiFailure as e:
            raise self._phase_failure("commit", e) from e
        self._logger.debug(f"upload committed asset={asset_id}")
        return committed.get("data") if isinstance(committed, dict) else committed

    def upload_file(
        self, path: Union[str, os.PathLike], declared_size: int, file_name: str, set_id: str
    ) -> Any:
        return self.upload(read_payload(os.fspath(path)), declared_size, file_name, set_id)


# ---------- Async uploader ----------


class AsyncAssetUploader(_UploadProtocol):
    def __init__(self, client: AsyncClient, **kwargs):
        super().__init__(**kwargs)
        self.client = client

    async def upload(
        self, source: bytes, declared_size: int, file_name: str, set_id: str
    ) -> Any:
        self._check_size(source, declared_size)

        try:
            reserved = await self.client.post(
                f"/{self.asset_type}", self._reserve_body(file_name, declared_size, set_id)
            )
        except ApiFailure as e:
            raise self._phase_failure("reserve", e) from e
        asset_id, ops = self._plan(reserved, declared_size)
        self._logger.debug(f"upload reserved asset={asset_id} operations={len(ops)}")

        for index, op in enumerate(ops):
            try:
                resp = await self.client.raw_request(
                    op.url, op.method, headers=op.headers(), body=source[op.offset : op.end]
                )
            except ApiFailure as e:
                raise self._phase_failure("transfer", e) from e
            if not 200 <= resp.status_code < 300:  # noqa: PLR2004
                raise self._transfer_failed(index, resp.status_code)

        try:
            committed = await self.client.patch(
                f"/{self.asset_type}/{asset_id}", self._commit_body(asset_id, checksum(source))
            )
        except ApiFailure as e:
            raise self._phase_failure("commit", e) from e
        self._logger.debug(f"upload committed asset={asset_id}")
        return committed.get("data") if isinstance(committed, dict) else committed

    async def upload_file(
        self, path: Union[str, os.PathLike], declared_size: int, file_name: str, set_id: str
    ) -> Any:
        source = await asyncio.to_thread(read_payload, os.fspath(path))
        return await self.upload(source, declared_size, file_name, set_id)
