[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rssagg"
version = "0.1.0"
description = "RSS aggregator with a JSON HTTP API for users, feeds and follows, backed by SQLite, with a background scraper that stores feed items as posts."
requires-python = ">=3.10"
keywords = ["rss", "aggregator", "feeds", "scraper", "json-api", "flask", "sqlite"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Web Environment",
    "Framework :: Flask",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: Dynamic Content :: News/Diary",
]
dependencies = [
    "flask",
    "python-dotenv",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
rssagg = "rssagg.app:main"

[tool.hatch.build.targets.wheel]
packages = ["rssagg"]

[tool.hatch.build.targets.sdist]
include = [
    "rssagg",
    "tests",
    "pyproject.toml",
    "README.md",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
