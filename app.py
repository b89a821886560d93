from __future__ import annotations

import json
import logging
import os
from typing import Any
from urllib.parse import parse_qs

from robyn import Request, Response, Robyn

from auth import (
    AUTH_HEADER_NAME,
    SessionStore,
    authenticate_token,
    check_credentials,
    hash_password,
)
from database import Database, UserRecord
from errors import ClientInputError, NotFoundError, StargramError, StorageError
from feeds import load_feed_image, publish_feed
from formdata import FormReader, MalformedFormError, is_multipart
from settings import load_settings

app = Robyn(__file__)
logger = logging.getLogger(__name__)

# Singletons used by every request
settings = load_settings()
db = Database(settings.db_path)
sessions = SessionStore(db)

# Robyn refuses larger requests itself, before any handler runs.
os.environ.setdefault("ROBYN_MAX_PAYLOAD_SIZE", str(settings.transport_limit))


async def _ensure_database() -> None:
    """Prepare the sqlite file before handling the first request."""
    await db.initialize()


app.startup_handler(_ensure_database)


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


def _form_data(request: Request) -> dict[str, str]:
    """Return urlencoded form fields from the raw body."""
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/x-www-form-urlencoded" not in content_type:
        return {}
    parsed = parse_qs(
        _raw_body_bytes(request).decode("utf-8", errors="replace"),
        keep_blank_values=True,
    )
    return {key: values[0] if values else "" for key, values in parsed.items()}


def _payload(request: Request) -> dict[str, Any]:
    """JSON body, falling back to urlencoded fields."""
    return _json_data(request) or _form_data(request)


def _json_response(payload: Any, *, status: int = 200) -> Response:
    return Response(
        status_code=status,
        headers={"content-type": "application/json; charset=utf-8"},
        description=json.dumps(payload),
    )


def _error_response(exc: StargramError) -> Response:
    """Map a domain error onto its status without leaking internals."""
    if isinstance(exc, StorageError):
        logger.error("storage failure: %s", exc, exc_info=exc)
    return _json_response({"error": exc.public_message}, status=exc.status_code)


async def _ensure_authenticated(request: Request) -> Response | UserRecord:
    """Return the user behind the Authentication header, or a 401 response."""
    try:
        return await authenticate_token(
            sessions, request.headers.get(AUTH_HEADER_NAME.lower())
        )
    except StargramError as exc:
        return _error_response(exc)


def _path_param(request: Request, name: str) -> str:
    return str(request.path_params.get(name) or "")


@app.post("/users")
async def register(request: Request) -> Response:
    """Create an account from a username and password."""
    payload = _payload(request)
    username = str(payload.get("username") or "").strip()
    password = str(payload.get("password") or "")
    try:
        if not username or not password:
            raise ClientInputError("username and password are required")
        user = await db.create_user(username, hash_password(password))
    except StargramError as exc:
        logger.warning("registration rejected status=%s", exc.status_code)
        return _error_response(exc)
    logger.info("user registered user_id=%s", user.id)
    return _json_response(user.to_public_dict())


@app.post("/login")
async def login(request: Request) -> Response:
    """Exchange valid credentials for a session token (plain text body)."""
    payload = _payload(request)
    username = str(payload.get("username") or "")
    password = str(payload.get("password") or "")
    try:
        token = await check_credentials(db, sessions, username, password)
    except StargramError as exc:
        return _error_response(exc)
    return Response(
        status_code=200,
        headers={"content-type": "text/plain; charset=utf-8"},
        description=token,
    )


@app.get("/users/@me")
async def get_me(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    return _json_response(auth.to_public_dict())


@app.get("/user/:username")
async def get_user(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    username = _path_param(request, "username")
    try:
        user = await db.fetch_user_by_username(username)
        if user is None:
            raise NotFoundError(f"no user {username!r}")
    except StargramError as exc:
        return _error_response(exc)
    return _json_response(user.to_public_dict())


@app.get("/user/:username/feeds")
async def get_user_feeds(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    try:
        feeds = await db.list_feeds_for_user(_path_param(request, "username"))
    except StargramError as exc:
        return _error_response(exc)
    return _json_response([feed.to_dict() for feed in feeds])


@app.post("/feeds")
async def create_feed(request: Request) -> Response:
    """Create a feed from a multipart body: one caption field plus image fields."""
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    user = auth
    body = _raw_body_bytes(request)
    logger.info("upload started user_id=%s bytes=%s", user.id, len(body))
    try:
        if not is_multipart(request.headers.get("content-type")):
            raise MalformedFormError("expected multipart/form-data")
        form = FormReader(
            request.form_data or {},
            request.files or {},
            body,
            max_part_size=settings.max_image_bytes,
            max_parts=settings.max_parts,
            max_body_size=settings.max_body_bytes,
        )
        feed = await publish_feed(db, user, form, timeout=settings.upload_timeout)
    except StargramError as exc:
        return _error_response(exc)
    return _json_response(feed.to_dict())


@app.get("/feeds/home")
async def get_home_feeds(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    try:
        feeds = await db.list_feeds()
    except StargramError as exc:
        return _error_response(exc)
    return _json_response([feed.to_dict() for feed in feeds])


@app.get("/feeds/:feed_id/images/:index")
async def get_feed_image(request: Request) -> Response:
    """Serve the stored bytes of one feed image, unchanged."""
    try:
        data, content_type = await load_feed_image(
            db,
            _path_param(request, "feed_id"),
            _path_param(request, "index"),
        )
    except StargramError as exc:
        return _error_response(exc)
    return Response(
        status_code=200,
        headers={"content-type": content_type},
        description=data,
    )


@app.get("/feeds/:feed_id/comments")
async def get_comments(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    try:
        comments = await db.list_comments(_path_param(request, "feed_id"))
    except StargramError as exc:
        return _error_response(exc)
    return _json_response([comment.to_dict() for comment in comments])


@app.post("/feeds/:feed_id/comments")
async def create_comment(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    feed_id = _path_param(request, "feed_id")
    content = str(_payload(request).get("content") or "").strip()
    try:
        if not content:
            raise ClientInputError("comment content is required")
        comment = await db.create_comment(feed_id, auth.id, content)
    except StargramError as exc:
        logger.warning(
            "comment rejected user_id=%s feed_id=%s status=%s",
            auth.id,
            feed_id,
            exc.status_code,
        )
        return _error_response(exc)
    logger.info("comment created user_id=%s feed_id=%s", auth.id, feed_id)
    return _json_response(comment.to_dict())


if __name__ == "__main__":
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    app.start(_check_port=False)
