from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, BinaryIO, Dict, List, Optional

import aiosqlite

from auth import extract_bearer_token, generate_api_key, hash_api_key
from database import Database, PhotoRecord, UserRecord
from errors import BadRequest, NotFound, Unauthorized, UpstreamError, ValidationError
from gateway import ContentGateway, GatewayError, InvalidContentID, parse_cid
from uploads import UploadForm

# Author: Daniel Neugent


@dataclass
class AuthContext:
    user: UserRecord


@dataclass
class Registration:
    user: UserRecord
    api_key: str

    def to_dict(self) -> Dict[str, Any]:
        """The only payload that ever carries the plaintext key."""
        return {
            "id": self.user.id,
            "handle": self.user.handle,
            "email": self.user.email,
            "apikey": self.api_key,
            "created_at": self.user.created_at,
        }


@dataclass
class PhotoDownload:
    photo: PhotoRecord
    stream: BinaryIO


class PhotoService:
    """Registration, bearer authentication and the upload/download workflows.

    The store and gateway are handed in by the caller; nothing here reads
    process-wide configuration.
    """

    def __init__(
        self,
        db: Database,
        gateway: ContentGateway,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.logger = logger or logging.getLogger(__name__)

    async def authenticate(self, header_value: Optional[str]) -> AuthContext:
        """Resolve the bearer header to a user or raise a 401-class error."""
        token = extract_bearer_token(header_value)
        try:
            user = await self.db.fetch_user_by_api_key_hash(hash_api_key(token))
        except aiosqlite.Error as exc:
            self.logger.exception("credential lookup failed")
            raise UpstreamError("credential store unavailable") from exc
        if user is None:
            self.logger.warning("auth rejected reason=unknown_key")
            raise Unauthorized("no user exists for the specified api key")
        return AuthContext(user=user)

    async def register_user(
        self, handle: Optional[str], email: Optional[str] = None
    ) -> Registration:
        handle = (handle or "").strip()
        if not handle:
            raise ValidationError("handle is required")
        api_key = generate_api_key()
        try:
            user = await self.db.create_user(handle, hash_api_key(api_key), email)
        except aiosqlite.IntegrityError as exc:
            self.logger.warning("registration rejected handle=%s reason=duplicate", handle)
            raise ValidationError(f"handle '{handle}' is already registered") from exc
        except aiosqlite.Error as exc:
            self.logger.exception("registration failed handle=%s", handle)
            raise UpstreamError("could not persist user") from exc
        self.logger.info("user registered user_id=%s handle=%s", user.id, handle)
        return Registration(user=user, api_key=api_key)

    async def upload_photo(self, auth: AuthContext, form: UploadForm) -> PhotoRecord:
        """Ingest the form's file into the gateway, then record its metadata.

        The metadata row is only written once the gateway has returned an
        identifier. A failed write leaves the content unreferenced.
        """
        user = auth.user
        self.logger.info(
            "upload started user_id=%s filename=%s bytes=%s",
            user.id,
            form.filename,
            form.size,
        )
        try:
            stored = await asyncio.to_thread(self.gateway.put, form.stream)
        except GatewayError as exc:
            self.logger.exception(
                "upload failed user_id=%s filename=%s reason=gateway",
                user.id,
                form.filename,
            )
            raise UpstreamError("content gateway rejected the upload") from exc
        finally:
            form.close()

        # Unnamed uploads are named after their content.
        name = form.filename or stored.cid
        try:
            photo = await self.db.create_photo(
                name=name, cid=stored.cid, user_id=user.id, size=stored.size
            )
        except aiosqlite.Error as exc:
            self.logger.error(
                "upload failed user_id=%s cid=%s reason=metadata content_orphaned=true",
                user.id,
                stored.cid,
            )
            raise UpstreamError("could not persist photo metadata") from exc
        self.logger.info(
            "upload completed user_id=%s photo_id=%s cid=%s size=%s",
            user.id,
            photo.id,
            photo.cid,
            photo.size,
        )
        return photo

    async def download_photo(self, cid: Optional[str]) -> PhotoDownload:
        """Look up a photo by content identifier and open its content stream."""
        try:
            photo = await self.db.fetch_photo_by_cid((cid or "").strip())
        except aiosqlite.Error as exc:
            self.logger.exception("photo lookup failed cid=%s", cid)
            raise UpstreamError("metadata store unavailable") from exc
        if photo is None:
            raise NotFound(f"no photo stored under {cid}")
        try:
            parsed = parse_cid(photo.cid)
        except InvalidContentID as exc:
            raise BadRequest(str(exc)) from exc
        try:
            stream = await asyncio.to_thread(self.gateway.get, parsed)
        except GatewayError as exc:
            self.logger.exception("download failed photo_id=%s cid=%s", photo.id, parsed)
            raise UpstreamError("content gateway could not return the photo") from exc
        return PhotoDownload(photo=photo, stream=stream)

    async def list_photos(self, auth: AuthContext) -> List[PhotoRecord]:
        try:
            photos = await self.db.list_photos_for_user(auth.user.id)
        except aiosqlite.Error as exc:
            self.logger.exception("photo listing failed user_id=%s", auth.user.id)
            raise UpstreamError("metadata store unavailable") from exc
        self.logger.info(
            "photos listed user_id=%s count=%s", auth.user.id, len(photos)
        )
        return photos
