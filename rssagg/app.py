"""HTTP API of the aggregator: users, feeds, follows and posts."""

from __future__ import annotations

import argparse
import functools
import json
import logging
import os
import sqlite3
import threading
import uuid
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from dotenv import load_dotenv
from flask import Blueprint, Flask, Response, request

from .auth import AuthError, get_api_key
from .models import User
from .scraper import start_scraping
from .serialize import (
    feed_follow_to_json,
    feed_follows_to_json,
    feed_to_json,
    feeds_to_json,
    posts_to_json,
    user_to_json,
)
from .store import Store, StoreError

logger = logging.getLogger(__name__)

POSTS_PER_PAGE = 10
SCRAPE_CONCURRENCY = 10
SCRAPE_INTERVAL = timedelta(minutes=1)

_ALLOWED_ORIGIN_PREFIXES = ("https://", "http://")
_ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "OPTIONS"})
_ALLOWED_HEADERS = frozenset(
    name.lower()
    for name in ("Accept", "Authorization", "Content-Type", "X-CSRF-Token", "Origin")
)
_EXPOSED_HEADERS = "Link"
_MAX_AGE = 300

_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}

_NIL_UUID = uuid.UUID(int=0)
_DECODER = json.JSONDecoder()


def _encode(payload: Any) -> str:
    text = json.dumps(
        payload, ensure_ascii=False, separators=(",", ":"), allow_nan=False
    )
    for char, escape in _HTML_ESCAPES.items():
        text = text.replace(char, escape)
    return text


def json_response(code: int, payload: Any) -> Response:
    """Serialise ``payload`` as JSON; an unencodable payload gives an empty 500."""
    try:
        body = _encode(payload)
    except (TypeError, ValueError):
        return Response(status=500)
    return Response(body, status=code, content_type="application/json")


def error_response(code: int, message: str) -> Response:
    """Reply with ``{"error": message}``, hiding details of server errors."""
    if code >= 500:
        message = "5XX Server Error"
    return json_response(code, {"error": message})


class _BodyError(ValueError):
    """Raised when a request body cannot be decoded."""


def _json_kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "null"


def _string_field(value: Any) -> str:
    if not isinstance(value, str):
        raise _BodyError(f"cannot unmarshal {_json_kind(value)} into a string field")
    return value


def _uuid_field(value: Any) -> uuid.UUID:
    text = _string_field(value)
    try:
        return uuid.UUID(text)
    except ValueError as exc:
        raise _BodyError(f"invalid UUID {text!r}") from exc


_FieldSpec = dict[str, tuple[Callable[[Any], Any], Any]]


def _decode_body(spec: _FieldSpec) -> dict[str, Any]:
    """Read the first JSON value of the body into the fields named by ``spec``.

    Keys match field names case-insensitively, unknown keys are ignored and
    null or missing fields keep their defaults.
    """
    text = request.get_data().decode("utf-8", "replace").lstrip(" \t\r\n")
    if not text:
        raise _BodyError("EOF")
    try:
        document, _ = _DECODER.raw_decode(text)
    except json.JSONDecodeError as exc:
        raise _BodyError(str(exc)) from exc

    values = {name: default for name, (_, default) in spec.items()}
    if document is None:
        return values
    if not isinstance(document, dict):
        raise _BodyError(f"cannot unmarshal {_json_kind(document)} into request body")

    by_lower = {name.lower(): name for name in spec}
    for key, value in document.items():
        name = by_lower.get(key.lower())
        if name is None or value is None:
            continue
        parse, _ = spec[name]
        values[name] = parse(value)
    return values


def _origin_allowed(origin: str) -> bool:
    return origin.startswith(_ALLOWED_ORIGIN_PREFIXES)


def _preflight_response() -> Response:
    response = Response(status=200)
    response.headers.add("Vary", "Origin")
    response.headers.add("Vary", "Access-Control-Request-Method")
    response.headers.add("Vary", "Access-Control-Request-Headers")

    origin = request.headers.get("Origin", "")
    method = request.headers.get("Access-Control-Request-Method", "").upper()
    requested = [
        part.strip()
        for part in request.headers.get("Access-Control-Request-Headers", "").split(",")
        if part.strip()
    ]
    if not origin or not _origin_allowed(origin):
        return response
    if method not in _ALLOWED_METHODS:
        return response
    if any(header.lower() not in _ALLOWED_HEADERS for header in requested):
        return response

    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = method
    if requested:
        response.headers["Access-Control-Allow-Headers"] = ", ".join(requested)
    response.headers["Access-Control-Max-Age"] = str(_MAX_AGE)
    return response


def _install_cors(app: Flask) -> None:
    @app.before_request
    def _handle_preflight() -> Response | None:
        if request.method == "OPTIONS" and request.headers.get(
            "Access-Control-Request-Method"
        ):
            return _preflight_response()
        return None

    @app.after_request
    def _add_cors_headers(response: Response) -> Response:
        if request.method == "OPTIONS" and request.headers.get(
            "Access-Control-Request-Method"
        ):
            return response
        response.headers.add("Vary", "Origin")
        origin = request.headers.get("Origin", "")
        if origin and _origin_allowed(origin):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Expose-Headers"] = _EXPOSED_HEADERS
        return response


def create_app(store: Store) -> Flask:
    """Build the web application serving the ``/v1`` API from ``store``."""
    app = Flask(__name__)
    _install_cors(app)
    v1 = Blueprint("v1", __name__, url_prefix="/v1")

    def authenticated(handler: Callable[..., Response]) -> Callable[..., Response]:
        @functools.wraps(handler)
        def wrapper(*args: Any, **kwargs: Any) -> Response:
            try:
                api_key = get_api_key(request.headers)
            except AuthError as exc:
                return error_response(403, f"auth error: {exc}")
            try:
                user = store.get_user_by_api_key(api_key)
            except StoreError as exc:
                return error_response(400, f"couldn't get user: {exc}")
            return handler(user, *args, **kwargs)

        return wrapper

    @v1.get("/healthz")
    def readiness() -> Response:
        return json_response(200, {})

    @v1.get("/error")
    def error() -> Response:
        return error_response(400, "Internal Server Error")

    @v1.post("/users")
    def create_user() -> Response:
        try:
            params = _decode_body({"name": (_string_field, "")})
        except _BodyError as exc:
            return json_response(400, f"Error decoding request body: {exc}")
        try:
            user = store.create_user(params["name"])
        except StoreError as exc:
            return json_response(400, f"couldn't create user: {exc}")
        return json_response(200, user_to_json(user))

    @v1.get("/users")
    @authenticated
    def get_user(user: User) -> Response:
        return json_response(200, user_to_json(user))

    @v1.post("/feeds")
    @authenticated
    def create_feed(user: User) -> Response:
        try:
            params = _decode_body(
                {"name": (_string_field, ""), "url": (_string_field, "")}
            )
        except _BodyError as exc:
            return json_response(400, f"Error decoding request body: {exc}")
        try:
            feed = store.create_feed(params["name"], params["url"], user.id)
        except StoreError as exc:
            return json_response(400, f"couldn't create feed: {exc}")
        return json_response(200, feed_to_json(feed))

    @v1.get("/feeds")
    def get_feeds() -> Response:
        try:
            feeds = store.get_feeds()
        except StoreError as exc:
            return json_response(400, f"couldn't fetch feed: {exc}")
        return json_response(200, feeds_to_json(feeds))

    @v1.post("/feedfollows")
    @authenticated
    def create_feed_follow(user: User) -> Response:
        try:
            params = _decode_body({"feed_id": (_uuid_field, _NIL_UUID)})
        except _BodyError as exc:
            return json_response(400, f"Error decoding request body: {exc}")
        try:
            follow = store.create_feed_follow(user.id, params["feed_id"])
        except StoreError as exc:
            return json_response(400, f"couldn't create feed follows: {exc}")
        return json_response(200, feed_follow_to_json(follow))

    @v1.get("/feedfollows")
    @authenticated
    def get_feed_follows(user: User) -> Response:
        try:
            follows = store.get_feed_follows(user.id)
        except StoreError as exc:
            return json_response(400, f"couldn't get feed following : {exc}")
        return json_response(200, feed_follows_to_json(follows))

    @v1.delete("/feedfollows/<feed_id>")
    @authenticated
    def delete_feed_follow(user: User, feed_id: str) -> Response:
        try:
            follow_id = uuid.UUID(feed_id)
        except ValueError as exc:
            return json_response(400, f"couldn't parse feed follow id: {exc}")
        try:
            store.delete_feed_follow(follow_id, user.id)
        except StoreError as exc:
            return json_response(400, f"couldn't unfollow feed id: {exc}")
        return json_response(200, {})

    @v1.get("/posts")
    @authenticated
    def get_posts(user: User) -> Response:
        try:
            posts = store.get_posts_for_user(user.id, POSTS_PER_PAGE)
        except StoreError as exc:
            return error_response(400, f"Couldn't get posts: {exc}")
        return json_response(200, posts_to_json(posts))

    app.register_blueprint(v1)
    return app


def main(argv: list[str] | None = None) -> None:
    """Start the scraper and serve the API on ``$PORT`` using ``$DB_URL``."""
    parser = argparse.ArgumentParser(
        prog="rssagg",
        description="Serve the feed aggregator API; configured through PORT and DB_URL.",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    load_dotenv(".env")

    port_text = os.environ.get("PORT", "")
    if not port_text:
        raise SystemExit("PORT environment variable not set")
    print("PORT environment variable is set to:", port_text)
    try:
        port = int(port_text)
    except ValueError:
        raise SystemExit(f"invalid PORT value: {port_text!r}") from None

    db_url = os.environ.get("DB_URL", "")
    if not db_url:
        raise SystemExit("database URL not set")

    try:
        store = Store(db_url)
    except (sqlite3.Error, StoreError) as exc:
        raise SystemExit(f"Failed to connect to database: {exc}") from exc

    stop = threading.Event()
    scraper = threading.Thread(
        target=start_scraping,
        args=(store, SCRAPE_CONCURRENCY, SCRAPE_INTERVAL, stop),
        daemon=True,
        name="scraper",
    )
    scraper.start()

    app = create_app(store)
    logger.info("Server starting on port %s", port)
    try:
        app.run(host="0.0.0.0", port=port, threaded=True)
    finally:
        stop.set()