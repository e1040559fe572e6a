# rssagg

A small RSS aggregator served over a JSON HTTP API. Users register, add
feeds, follow the feeds they care about, and read the latest posts from
those feeds. A background scraper periodically fetches the feeds that
have gone longest without a fetch and stores their items as posts.
Everything is kept in a SQLite database.

## Installation

```
pip install .
```

For running the test suite:

```
pip install ".[test]"
pytest
```

## Running the server

The `rssagg` command reads its configuration from environment variables,
which may also be placed in a `.env` file in the working directory:

| Variable | Meaning                                          |
|----------|--------------------------------------------------|
| `PORT`   | Port the HTTP server listens on (all interfaces) |
| `DB_URL` | Path of the SQLite database file to open         |

Both are required; the command exits with a message if either is unset
or if `PORT` is not a number. Tables are created on first use.

```
PORT=8080 DB_URL=rssagg.db rssagg
```

On start-up a scraper thread begins working in the background: once a
minute it takes up to 10 feeds, those never fetched first and then those
fetched longest ago, and fetches them in parallel. Each item whose
`pubDate` is an RFC 1123 date with a numeric zone (such as
`Mon, 02 Jan 2006 15:04:05 -0700`) is stored as a post; items with other
dates are skipped, and an item whose link is already stored is ignored.

## API

All routes live under `/v1`. Routes marked *auth* need an API key sent
as:

```
Authorization: ApiKeys placeholder
```

where `placeholder` stands for the `apikey` returned when the user was
created.

| Method | Path                         | Auth | Body / result                                      |
|--------|------------------------------|------|----------------------------------------------------|
| GET    | `/v1/healthz`                |      | `{}` when the server is up                         |
| GET    | `/v1/error`                  |      | a sample error response (status 400)               |
| POST   | `/v1/users`                  |      | `{"name": ...}` → the new user with its `apikey`   |
| GET    | `/v1/users`                  | yes  | the authenticated user                             |
| POST   | `/v1/feeds`                  | yes  | `{"name": ..., "url": ...}` → the new feed         |
| GET    | `/v1/feeds`                  |      | every feed                                         |
| POST   | `/v1/feedfollows`            | yes  | `{"feed_id": ...}` → the new follow                |
| GET    | `/v1/feedfollows`            | yes  | the user's follows                                 |
| DELETE | `/v1/feedfollows/{feed_id}`  | yes  | removes the user's follow whose id is given → `{}` |
| GET    | `/v1/posts`                  | yes  | the 10 newest posts from followed feeds            |

Notes on the responses:

- Timestamps are RFC 3339 strings in UTC, e.g. `2024-01-02T03:04:05.5Z`.
- A feed's URL is returned under the key `apikey`.
- A post's `description` may be `null`.
- A missing or malformed `Authorization` header gives status 403 with
  `{"error": "auth error: ..."}`; an unknown key gives status 400 with
  `{"error": "couldn't get user: ..."}`.
- A body that cannot be decoded, or a row that cannot be stored (for
  example a second feed with the same URL, or following the same feed
  twice), gives status 400 with a JSON string describing the problem.

Cross-origin requests from any `http://` or `https://` origin are
allowed, including preflight requests.

## Using it from Python

The pieces can also be used directly:

```python
from rssagg.store import Store
from rssagg.app import create_app
from rssagg.scraper import scrape_once

with Store("rssagg.db") as store:
    user = store.create_user("alice")
    feed = store.create_feed("Example", "https://example.com/rss.xml", user.id)
    store.create_feed_follow(user.id, feed.id)

    scrape_once(store, 10)
    posts = store.get_posts_for_user(user.id, 10)

    app = create_app(store)  # a Flask application
```

- `rssagg.store.Store` opens a SQLite database (`":memory:"` by default)
  and raises `NotFoundError` or `DuplicateError`, both kinds of
  `StoreError`, when a row is missing or would be duplicated.
  `Store.transaction()` groups several operations into one commit.
- `rssagg.scraper.scrape_feed`, `scrape_once` and `start_scraping` take
  an optional `fetcher`, a callable from a URL to an `RSSFeed`;
  `start_scraping` runs until the given `threading.Event` is set.
- `rssagg.rss.parse_feed` turns the bytes of an RSS document into an
  `RSSFeed` (malformed input gives an empty one), and `fetch_feed`
  downloads and parses a URL.
- `rssagg.auth.get_api_key` extracts the key from a set of request
  headers, raising `AuthError` when the header is absent or malformed.
- `rssagg.serialize` holds the functions that turn records into the
  JSON shapes listed above.

## What it does not do

Storage is SQLite only: `DB_URL` is a file path, not the address of a
database server. There is no way to delete users or feeds through the
API, and no migration tooling beyond creating missing tables.