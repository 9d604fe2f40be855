import json
import logging
from typing import Any, BinaryIO, Dict, Iterator
from urllib.parse import quote

from robyn import Headers, Request, Response, Robyn, StreamingResponse
from robyn.openapi import OpenAPI, OpenAPIInfo

from config import Settings, configure_logging
from database import Database, PhotoRecord, UserRecord
from errors import PhotoServiceError
from gateway import build_gateway
from service import PhotoService
from uploads import decode_upload_form

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

GREETING = "Welcome to PinPhotos"
API_VERSION = "0.1.0"
DOWNLOAD_CHUNK_SIZE = 64 * 1024


def _raw_body_bytes(request: Request) -> bytes:
    raw_body = request.body
    if isinstance(raw_body, (bytes, bytearray)):
        return bytes(raw_body)
    if isinstance(raw_body, list):
        return bytes(raw_body)
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    return b""


def _json_data(request: Request) -> dict:
    body = _raw_body_bytes(request)
    if not body:
        return {}
    try:
        parsed = json.loads(body.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _json_response(payload: Any, *, status: int = 200) -> Response:
    return Response(
        status_code=status,
        headers={"content-type": "application/json; charset=utf-8"},
        description=json.dumps(payload),
    )


def _error_response(exc: PhotoServiceError) -> Response:
    return _json_response(exc.to_dict(), status=exc.status_code)


def _photo_payload(photo: PhotoRecord, owner: UserRecord) -> Dict[str, Any]:
    payload = photo.to_dict()
    payload["owner"] = owner.handle
    return payload


def _download_chunks(stream: BinaryIO) -> Iterator[bytes]:
    try:
        for chunk in iter(lambda: stream.read(DOWNLOAD_CHUNK_SIZE), b""):
            yield chunk
    finally:
        stream.close()


def create_app(settings: Settings) -> Robyn:
    """Wire the store, gateway and workflows into a Robyn application.

    Robyn publishes the generated API description at ``/openapi.json`` and
    the interactive docs at ``/docs``.
    """
    app = Robyn(
        __file__,
        openapi=OpenAPI(
            info=OpenAPIInfo(
                title="PinPhotos",
                version=API_VERSION,
                description="Upload photos to a content-addressed gateway and fetch them by content identifier.",
            )
        ),
    )
    db = Database(settings.db_path)
    service = PhotoService(
        db,
        build_gateway(settings),
        logger=logging.getLogger("pinphotos.service"),
    )

    async def _ensure_database() -> None:
        """Prepare the sqlite file before handling the first request."""
        await db.initialize()

    app.startup_handler(_ensure_database)

    @app.before_request()
    async def log_request(request: Request) -> Request:
        logger.info("request method=%s path=%s", request.method, request.url.path)
        return request

    @app.get("/", openapi_name="Greeting", openapi_tags=["meta"])
    async def index(request: Request) -> Response:
        """Return the service greeting."""
        return _json_response(GREETING)

    @app.post(
        "/user/:handle",
        openapi_name="Register user",
        openapi_tags=["users"],
        status_code=201,
        responses={400: "Handle missing or already registered"},
    )
    async def register_user(request: Request) -> Response:
        """Create a user and hand back its API key, the only time it is shown.

        An optional JSON body may carry an ``email``.
        """
        payload = _json_data(request)
        email = str(payload.get("email") or "").strip() or None
        try:
            registration = await service.register_user(
                request.path_params.get("handle"), email=email
            )
        except PhotoServiceError as exc:
            return _error_response(exc)
        return _json_response(registration.to_dict(), status=201)

    @app.post(
        "/photo",
        openapi_name="Upload photo",
        openapi_tags=["photos"],
        status_code=201,
        responses={
            400: "Malformed form or missing file",
            401: "Missing or unknown bearer key",
            500: "Gateway or metadata store failure",
        },
    )
    async def upload_photo(request: Request) -> Response:
        """Store the multipart file ``data`` for the bearer key's owner.

        A ``filename`` form field overrides the name sent with the file.
        """
        try:
            auth = await service.authenticate(request.headers.get(settings.auth_header))
            form = decode_upload_form(
                request.headers.get("content-type"), request.form_data, request.files
            )
            photo = await service.upload_photo(auth, form)
        except PhotoServiceError as exc:
            return _error_response(exc)
        return _json_response(_photo_payload(photo, auth.user), status=201)

    @app.get(
        "/photo",
        openapi_name="List photos",
        openapi_tags=["photos"],
        responses={401: "Missing or unknown bearer key"},
    )
    async def list_photos(request: Request) -> Response:
        """List the bearer key owner's photos, newest first."""
        try:
            auth = await service.authenticate(request.headers.get(settings.auth_header))
            photos = await service.list_photos(auth)
        except PhotoServiceError as exc:
            return _error_response(exc)
        return _json_response(
            {"photos": [_photo_payload(photo, auth.user) for photo in photos]}
        )

    @app.get(
        "/photo/:cid",
        openapi_name="Download photo",
        openapi_tags=["photos"],
        response_model=bytes,
        responses={
            400: "Stored identifier is malformed",
            404: "No photo with this content identifier",
            500: "Gateway failure",
        },
    )
    async def download_photo(request: Request):
        """Stream the content stored under ``cid`` as an octet stream."""
        try:
            download = await service.download_photo(request.path_params.get("cid"))
        except PhotoServiceError as exc:
            return _error_response(exc)
        return StreamingResponse(
            _download_chunks(download.stream),
            status_code=200,
            headers=Headers(
                {
                    "Content-Type": "application/octet-stream",
                    "Content-Disposition": (
                        f"inline; filename*=UTF-8''{quote(download.photo.name)}"
                    ),
                }
            ),
            media_type="application/octet-stream",
        )

    return app


settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    app.start(host=settings.host, port=settings.port, _check_port=False)
