import uuid
from datetime import datetime, timedelta, timezone

import pytest

from rssagg.app import create_app, error_response, json_response, main
from rssagg.store import Store


@pytest.fixture
def store():
    with Store(":memory:") as s:
        yield s


@pytest.fixture
def client(store):
    app = create_app(store)
    app.testing = True
    return app.test_client()


def _auth(key):
    return {"Authorization": f"ApiKeys {key}"}


def _make_user(client, name="alice"):
    response = client.post("/v1/users", json={"name": name})
    assert response.status_code == 200
    return response.get_json()


def test_healthz_returns_empty_object(client):
    response = client.get("/v1/healthz")
    assert response.status_code == 200
    assert response.get_json() == {}
    assert response.headers["Content-Type"] == "application/json"


def test_error_endpoint(client):
    response = client.get("/v1/error")
    assert response.status_code == 400
    assert response.get_json() == {"error": "Internal Server Error"}


def test_create_and_get_user(client):
    created = _make_user(client, "alice")
    assert created["name"] == "alice"
    assert len(created["apikey"]) == 64
    int(created["apikey"], 16)

    response = client.get("/v1/users", headers=_auth(created["apikey"]))
    assert response.status_code == 200
    assert response.get_json() == created


def test_user_body_keys_match_case_insensitively(client):
    response = client.post("/v1/users", data='{"NAME": "bob"}')
    assert response.status_code == 200
    assert response.get_json()["name"] == "bob"


@pytest.mark.parametrize("body", ["", "{not json", '{"name": 5}', "[1, 2]"])
def test_create_user_rejects_bad_body(client, body):
    response = client.post("/v1/users", data=body)
    assert response.status_code == 400
    message = response.get_json()
    assert isinstance(message, str)
    assert message.startswith("Error decoding request body: ")


def test_missing_auth_header(client):
    response = client.get("/v1/users")
    assert response.status_code == 403
    assert response.get_json() == {
        "error": "auth error: no authentication info found"
    }


def test_wrong_auth_scheme(client):
    response = client.get("/v1/users", headers={"Authorization": "Bearer token"})
    assert response.status_code == 403
    assert response.get_json() == {
        "error": "auth error: malformed first part of auth header"
    }


def test_malformed_auth_header(client):
    response = client.get("/v1/users", headers={"Authorization": "ApiKeys"})
    assert response.status_code == 403
    assert response.get_json() == {"error": "auth error: malformed auth header"}


def test_unknown_api_key(client):
    response = client.get("/v1/users", headers=_auth("placeholder"))
    assert response.status_code == 400
    assert response.get_json()["error"].startswith("couldn't get user: ")


def test_create_and_list_feeds(client):
    user = _make_user(client)
    response = client.post(
        "/v1/feeds",
        json={"name": "news", "url": "https://example.com/rss"},
        headers=_auth(user["apikey"]),
    )
    assert response.status_code == 200
    feed = response.get_json()
    assert feed["name"] == "news"
    assert feed["apikey"] == "https://example.com/rss"
    assert feed["user_id"] == user["id"]

    listed = client.get("/v1/feeds")
    assert listed.status_code == 200
    assert listed.get_json() == [feed]


def test_duplicate_feed_url_is_rejected(client):
    user = _make_user(client)
    body = {"name": "news", "url": "https://example.com/rss"}
    first = client.post("/v1/feeds", json=body, headers=_auth(user["apikey"]))
    assert first.status_code == 200
    second = client.post("/v1/feeds", json=body, headers=_auth(user["apikey"]))
    assert second.status_code == 400
    assert second.get_json().startswith("couldn't create feed: ")


def test_feed_follow_lifecycle(client):
    user = _make_user(client)
    headers = _auth(user["apikey"])
    feed = client.post(
        "/v1/feeds",
        json={"name": "news", "url": "https://example.com/rss"},
        headers=headers,
    ).get_json()

    created = client.post("/v1/feedfollows", json={"feed_id": feed["id"]}, headers=headers)
    assert created.status_code == 200
    follow = created.get_json()
    assert follow["feed_id"] == feed["id"]
    assert follow["user_id"] == user["id"]

    listed = client.get("/v1/feedfollows", headers=headers)
    assert listed.get_json() == [follow]

    deleted = client.delete(f"/v1/feedfollows/{follow['id']}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.get_json() == {}
    assert client.get("/v1/feedfollows", headers=headers).get_json() == []


def test_follow_unknown_feed_fails(client):
    user = _make_user(client)
    response = client.post(
        "/v1/feedfollows",
        json={"feed_id": str(uuid.uuid4())},
        headers=_auth(user["apikey"]),
    )
    assert response.status_code == 400
    assert response.get_json().startswith("couldn't create feed follows: ")


def test_follow_with_invalid_uuid(client):
    user = _make_user(client)
    response = client.post(
        "/v1/feedfollows", json={"feed_id": "nope"}, headers=_auth(user["apikey"])
    )
    assert response.status_code == 400
    assert response.get_json().startswith("Error decoding request body: ")


def test_delete_follow_with_bad_id(client):
    user = _make_user(client)
    response = client.delete("/v1/feedfollows/nope", headers=_auth(user["apikey"]))
    assert response.status_code == 400
    assert response.get_json().startswith("couldn't parse feed follow id: ")


def test_delete_follow_of_other_user_keeps_it(client):
    owner = _make_user(client, "owner")
    other = _make_user(client, "other")
    feed = client.post(
        "/v1/feeds",
        json={"name": "news", "url": "https://example.com/rss"},
        headers=_auth(owner["apikey"]),
    ).get_json()
    follow = client.post(
        "/v1/feedfollows", json={"feed_id": feed["id"]}, headers=_auth(owner["apikey"])
    ).get_json()

    response = client.delete(
        f"/v1/feedfollows/{follow['id']}", headers=_auth(other["apikey"])
    )
    assert response.status_code == 200
    remaining = client.get("/v1/feedfollows", headers=_auth(owner["apikey"])).get_json()
    assert remaining == [follow]


def test_posts_for_user_are_newest_first_and_limited(client, store):
    user = _make_user(client)
    headers = _auth(user["apikey"])
    feed = client.post(
        "/v1/feeds",
        json={"name": "news", "url": "https://example.com/rss"},
        headers=headers,
    ).get_json()
    client.post("/v1/feedfollows", json={"feed_id": feed["id"]}, headers=headers)

    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for n in range(12):
        store.create_post(
            title=f"post {n}",
            description=None,
            published_at=base + timedelta(hours=n),
            url=f"https://example.com/post/{n}",
            feed_id=uuid.UUID(feed["id"]),
        )

    response = client.get("/v1/posts", headers=headers)
    assert response.status_code == 200
    posts = response.get_json()
    assert len(posts) == 10
    assert posts[0]["title"] == "post 11"
    stamps = [p["published_at"] for p in posts]
    assert stamps == sorted(stamps, reverse=True)
    assert all(p["description"] is None for p in posts)


def test_json_response_escapes_html():
    response = json_response(200, "<a&b>")
    assert response.get_data() == b'"\\u003ca\\u0026b\\u003e"'


def test_json_response_unencodable_payload():
    response = json_response(200, {"value": object()})
    assert response.status_code == 500
    assert response.get_data() == b""


def test_error_response_hides_server_errors():
    response = error_response(503, "database exploded")
    assert response.status_code == 503
    assert response.get_json() == {"error": "5XX Server Error"}


def test_error_response_keeps_client_errors():
    response = error_response(404, "missing")
    assert response.get_json() == {"error": "missing"}


def test_cors_headers_on_simple_request(client):
    response = client.get("/v1/healthz", headers={"Origin": "https://example.com"})
    assert response.headers["Access-Control-Allow-Origin"] == "https://example.com"
    assert response.headers["Access-Control-Expose-Headers"] == "Link"


def test_cors_rejects_non_http_origin(client):
    response = client.get("/v1/healthz", headers={"Origin": "file://local"})
    assert "Access-Control-Allow-Origin" not in response.headers


def test_cors_preflight(client):
    response = client.options(
        "/v1/users",
        headers={
            "Origin": "http://example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Authorization",
        },
    )
    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "http://example.com"
    assert response.headers["Access-Control-Allow-Methods"] == "POST"
    assert response.headers["Access-Control-Allow-Headers"] == "Authorization"
    assert response.headers["Access-Control-Max-Age"] == "300"


def test_cors_preflight_disallowed_method(client):
    response = client.options(
        "/v1/users",
        headers={"Origin": "http://example.com", "Access-Control-Request-Method": "PATCH"},
    )
    assert response.status_code == 200
    assert "Access-Control-Allow-Origin" not in response.headers


def test_main_requires_port(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PORT", raising=False)
    with pytest.raises(SystemExit) as info:
        main([])
    assert info.value.code == "PORT environment variable not set"


def test_main_requires_db_url(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.delenv("DB_URL", raising=False)
    with pytest.raises(SystemExit) as info:
        main([])
    assert info.value.code == "database URL not set"


def test_main_reads_env_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.delenv("DB_URL", raising=False)
    (tmp_path / ".env").write_text("PORT=9000\n")
    with pytest.raises(SystemExit) as info:
        main([])
    assert info.value.code == "database URL not set"
    monkeypatch.delenv("PORT", raising=False)