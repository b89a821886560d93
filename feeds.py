from __future__ import annotations

import asyncio
from enum import Enum
import io
import logging
from typing import AsyncIterable, Optional
from uuid import uuid4

from PIL import Image, UnidentifiedImageError

from database import Database, FeedRecord, UserRecord
from errors import ClientInputError, NotFoundError, PayloadTooLargeError, UploadTimeoutError
from formdata import FormPart

logger = logging.getLogger(__name__)

CAPTION_FIELD = "caption"
ALLOWED_FORMATS = ("PNG", "JPEG")
MAX_IMAGES_PER_FEED = 255

FORMAT_CONTENT_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
}

# Pillow reports JPEGs carrying a multi-picture segment as MPO.
_FORMAT_ALIASES = {"MPO": "JPEG"}


class UploadRejected(ClientInputError):
    """The submission is not a well-formed feed."""


class UploadState(Enum):
    COLLECTING = "collecting"
    FINALIZING = "finalizing"
    DONE = "done"
    REJECTED = "rejected"


def sniff_image_format(data: bytes) -> Optional[str]:
    """Identify PNG or JPEG from the bytes themselves, ignoring any claimed type."""
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data), formats=ALLOWED_FORMATS) as img:
            return _FORMAT_ALIASES.get(img.format, img.format)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        return None


class FeedUpload:
    """One feed submission, driven part by part.

    Parts are validated as they arrive: image parts are sniffed and queued
    under positions 0, 1, 2... in arrival order, and the caption may show up
    anywhere (the last one wins). Once the parts run out the submission must
    hold a caption and at least one image. Only then are the image rows and
    the feed row written, together, in one short transaction, so a rejected
    or failed submission leaves no rows behind.
    """

    def __init__(self, db: Database, user: UserRecord) -> None:
        self.db = db
        self.user = user
        self.feed_id = uuid4().hex
        self.state = UploadState.COLLECTING
        self.caption: Optional[str] = None
        self.images: list[bytes] = []

    async def _collect(self, form: AsyncIterable[FormPart]) -> None:
        async for part in form:
            if part.name == CAPTION_FIELD and part.filename is None:
                self.caption = await part.text()
                continue
            data = await part.read()
            if sniff_image_format(data) not in ALLOWED_FORMATS:
                raise UploadRejected(f"unsupported_image field={part.name}")
            if len(self.images) >= MAX_IMAGES_PER_FEED:
                raise UploadRejected("too_many_images")
            self.images.append(data)

    async def _store(self) -> FeedRecord:
        async with self.db.transaction() as conn:
            for position, data in enumerate(self.images):
                await self.db.insert_image(conn, self.feed_id, position, data)
            return await self.db.insert_feed(
                conn,
                feed_id=self.feed_id,
                user_id=self.user.id,
                caption=self.caption,
                image_count=len(self.images),
            )

    async def run(self, form: AsyncIterable[FormPart]) -> FeedRecord:
        if self.state is not UploadState.COLLECTING:
            raise RuntimeError(f"upload already {self.state.value}")
        try:
            await self._collect(form)
            self.state = UploadState.FINALIZING
            if not self.images:
                raise UploadRejected("no_images")
            if not self.caption:
                raise UploadRejected("missing_caption")
            feed = await self._store()
        except (ClientInputError, PayloadTooLargeError) as exc:
            self.state = UploadState.REJECTED
            logger.warning(
                "upload rejected user_id=%s feed_id=%s reason=%s",
                self.user.id,
                self.feed_id,
                exc,
            )
            raise
        except BaseException:
            self.state = UploadState.REJECTED
            raise
        self.state = UploadState.DONE
        logger.info(
            "upload completed user_id=%s feed_id=%s images=%s",
            self.user.id,
            feed.id,
            feed.image_count,
        )
        return feed


async def publish_feed(
    db: Database, user: UserRecord, form: AsyncIterable[FormPart], *, timeout: float
) -> FeedRecord:
    """Run one ``FeedUpload``, giving up after ``timeout`` seconds."""
    upload = FeedUpload(db, user)
    try:
        return await asyncio.wait_for(upload.run(form), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "upload rejected user_id=%s feed_id=%s reason=timeout",
            user.id,
            upload.feed_id,
        )
        raise UploadTimeoutError() from None


async def load_feed_image(db: Database, feed_id: str, raw_index: str) -> tuple[bytes, str]:
    """Fetch the stored bytes for one image and the content type to serve them with."""
    if not (raw_index.isascii() and raw_index.isdigit()):
        raise NotFoundError("image index must be a non-negative integer")
    index = int(raw_index)
    if index >= MAX_IMAGES_PER_FEED:
        raise NotFoundError(f"no image {index} for feed {feed_id}")
    data = await db.fetch_image(feed_id, index)
    if data is None:
        raise NotFoundError(f"no image {index} for feed {feed_id}")
    content_type = FORMAT_CONTENT_TYPES.get(
        sniff_image_format(data) or "", "application/octet-stream"
    )
    return data, content_type
