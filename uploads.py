from __future__ import annotations

from dataclasses import dataclass
import io
from typing import Any, BinaryIO, Mapping, Optional

from errors import BadRequest

# Author: Daniel Neugent

FILE_FIELD = "data"
NAME_FIELD = "filename"


@dataclass
class UploadForm:
    filename: str
    stream: BinaryIO
    size: int

    def close(self) -> None:
        self.stream.close()


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    return b""


def decode_upload_form(
    content_type: Optional[str],
    form_data: Optional[Mapping[str, Any]],
    files: Optional[Mapping[str, Any]],
) -> UploadForm:
    """Turn Robyn's parsed multipart form into the uploaded file and its name.

    Robyn keys ``files`` by the name sent with each file part, so the upload
    must carry exactly one file. A non-empty ``filename`` field overrides the
    name sent with the file part. Any problem with the form is reported as
    ``BadRequest``.
    """
    if not content_type or "multipart/form-data" not in content_type.lower():
        raise BadRequest("expected a multipart/form-data body")
    files = files or {}
    if not files:
        raise BadRequest(f"form file '{FILE_FIELD}' is required")
    if len(files) > 1:
        raise BadRequest(f"expected a single form file '{FILE_FIELD}', got {len(files)}")

    ((original_name, raw),) = files.items()
    content = _as_bytes(raw)
    override = str((form_data or {}).get(NAME_FIELD) or "").strip()
    filename = override or str(original_name or "").strip()
    return UploadForm(filename=filename, stream=io.BytesIO(content), size=len(content))
