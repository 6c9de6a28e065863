"""Collect friends' Letterboxd activity and post a weekly movie round-up to WhatsApp."""
from __future__ import annotations

import argparse
import csv
import io
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple

import feedparser
import requests
from dateutil import parser as dt_parser

FEED_URL_TEMPLATE = "https://letterboxd.com/{username}/rss/"
WHAPI_BASE_URL = "https://gate.whapi.cloud"
DEFAULT_HTTP_TIMEOUT = 30
LOOKBACK_DAYS = 7

UNKNOWN_FRIEND = "Unknown"
UNKNOWN_MOVIE = "Unknown Movie"

FULL_STAR = "★"
HALF_STAR = "½"

EMPTY_DIGEST_MESSAGE = "No movies watched this week 😱"
DIGEST_HEADER = "*🍿 Weekly Movie Round-up 🍿*\n\n"

# "The Matrix - ★★★★" -> ("The Matrix", "★★★★")
TITLE_PATTERN = re.compile(r"(?P<title>.*?) - (?P<rating>[★½]+)", re.DOTALL)
# "https://letterboxd.com/alice/film/dune/" -> "https://letterboxd.com/film/dune/"
LINK_PATTERN = re.compile(r"(?P<base>https?://[^/]+)/[^/]+/film/(?P<slug>[^/]+)/")

# Zone names RFC 2822 still allows in dates, as offsets in seconds.
RFC822_TZINFOS = {
    "UT": 0,
    "GMT": 0,
    "Z": 0,
    "EST": -5 * 3600,
    "EDT": -4 * 3600,
    "CST": -6 * 3600,
    "CDT": -5 * 3600,
    "MST": -7 * 3600,
    "MDT": -6 * 3600,
    "PST": -8 * 3600,
    "PDT": -7 * 3600,
}
# Two fill-ins that differ in every field down to the minute; a date that
# parses differently against each one left some of those fields out.
_DATE_FILL_INS = (datetime(1900, 1, 1, 0, 0), datetime(1904, 2, 2, 1, 1))


class RosterError(RuntimeError):
    """Raised when the friend roster cannot be loaded."""


class FeedError(RuntimeError):
    """Raised when a friend's feed cannot be fetched or parsed."""


class DeliveryError(RuntimeError):
    """Raised when the WhatsApp gateway rejects a request."""


@dataclass(frozen=True)
class RosterEntry:
    display_name: str
    feed_username: str


@dataclass(frozen=True)
class ReviewEntry:
    friend_name: str
    rating_raw: str = ""


@dataclass
class MovieGroup:
    general_link: str
    reviews: List[ReviewEntry] = field(default_factory=list)


FeedSource = Callable[[str], Sequence[Mapping[str, Any]]]


def load_env_file(path: str | Path = ".env") -> None:
    """Seed SHEET_CSV_URL, WHAPI_TOKEN and friends from a .env file.

    Values already present in the environment win. Lines may carry a
    shell-style ``export`` prefix and a matching pair of quotes.
    """
    env_path = Path(path)
    if not env_path.is_file():
        return
    try:
        lines = env_path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise SystemExit(f"Failed to read {env_path}: {exc}")
    for raw_line in lines:
        entry = raw_line.strip()
        if entry.startswith("export "):
            entry = entry[len("export "):].lstrip()
        name, sep, value = entry.partition("=")
        name = name.strip()
        if not sep or not name or name.startswith("#"):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        os.environ.setdefault(name, value)


load_env_file()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("movie_digest")


def parse_title(raw_title: str) -> Tuple[str, str]:
    """Split a feed title into the movie title and its star rating.

    The rating suffix is only recognised when it closes the whole string,
    e.g. ``"Parasite - ★★★★½"``. Anything else comes back untouched with
    an empty rating, which means the movie was watched but not rated.
    """
    match = TITLE_PATTERN.fullmatch(raw_title)
    if not match:
        return raw_title, ""
    return match.group("title"), match.group("rating")


def normalize_link(user_link: str) -> str:
    """Drop the reviewer's username from a film link."""
    match = LINK_PATTERN.match(user_link)
    if not match:
        return user_link
    return f"{match.group('base')}/film/{match.group('slug')}/"


def calculate_score(rating_raw: str) -> float:
    full_stars = rating_raw.count(FULL_STAR)
    half_star = 0.5 if HALF_STAR in rating_raw else 0.0
    return full_stars + half_star


def reaction_symbol(score: float) -> str:
    if score == 5.0:
        return "🤩"
    if score >= 4.0:
        return "🔥"
    if score >= 3.0:
        return "🙂"
    if score >= 2.0:
        return "😐"
    if score > 0.0:
        return "🤮"
    return "🤔"


def load_roster(csv_text: str) -> List[RosterEntry]:
    """Return roster entries from the spreadsheet export, skipping the header."""
    roster: List[RosterEntry] = []
    reader = csv.reader(io.StringIO(csv_text))
    next(reader, None)
    for line_no, row in enumerate(reader, start=2):
        if not any(cell.strip() for cell in row):
            continue
        name = row[0].strip() if row else ""
        username = row[1].strip() if len(row) > 1 else ""
        if not username:
            raise RosterError(f"No username on roster line {line_no}")
        roster.append(RosterEntry(display_name=name or UNKNOWN_FRIEND, feed_username=username))
    return roster


def fetch_roster(sheet_url: str) -> List[RosterEntry]:
    """Download the roster CSV and parse it."""
    logger.info("Fetching friend list...")
    try:
        response = requests.get(sheet_url, timeout=DEFAULT_HTTP_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise RosterError(f"Failed to download roster: {exc}") from exc
    return load_roster(response.text)


def fetch_feed(username: str) -> List[Mapping[str, Any]]:
    """Fetch and parse a user's Letterboxd RSS feed."""
    url = FEED_URL_TEMPLATE.format(username=username)
    try:
        response = requests.get(url, timeout=DEFAULT_HTTP_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FeedError(f"Failed fetching {url}: {exc}") from exc
    parsed = feedparser.parse(response.content)
    if parsed.bozo and not parsed.entries:
        raise FeedError(f"Failed parsing {url}: {parsed.get('bozo_exception')}")
    return list(parsed.entries)


def _parse_full_date(raw_value: str) -> datetime | None:
    """Parse a complete date and time, rejecting fragments like ``"Mon"`` or ``"7"``."""
    parsed = []
    for default in _DATE_FILL_INS:
        try:
            parsed.append(dt_parser.parse(raw_value, default=default, tzinfos=RFC822_TZINFOS))
        except (ValueError, TypeError, OverflowError):
            return None
    first, second = parsed
    if first != second:
        return None
    return first


def _published_at(item: Mapping[str, Any]) -> datetime | None:
    # feedparser has already decoded RFC 822 dates, in UTC
    parsed_struct = item.get("published_parsed")
    if parsed_struct:
        return datetime(*parsed_struct[:6], tzinfo=timezone.utc)
    raw_value = item.get("published")
    if not raw_value:
        return None
    dt = _parse_full_date(raw_value)
    if dt is None:
        return None
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _review_from_item(
    item: Mapping[str, Any], friend_name: str, threshold: datetime
) -> Tuple[str, str, ReviewEntry] | None:
    """Turn one feed item into ``(title, link, review)``, or None to skip it."""
    published = _published_at(item)
    if published is None:
        logger.debug("Skipping item with unreadable date: %r", item.get("published"))
        return None
    if published < threshold:
        return None
    title, rating_raw = parse_title(item.get("title") or UNKNOWN_MOVIE)
    link = normalize_link(item.get("link") or "")
    return title, link, ReviewEntry(friend_name=friend_name, rating_raw=rating_raw)


def build_movie_map(
    roster: Sequence[RosterEntry],
    now: datetime | None = None,
    feed_source: FeedSource | None = None,
) -> Mapping[str, MovieGroup]:
    """Group the last week of roster activity by movie title.

    Friends are processed in roster order and each feed in its own order, so
    reviews within a group keep that order. A friend whose feed fails is
    skipped; the group link comes from whichever review created the group.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif not now.tzinfo:
        now = now.replace(tzinfo=timezone.utc)
    if feed_source is None:
        feed_source = fetch_feed
    threshold = now - timedelta(days=LOOKBACK_DAYS)

    movie_map: Dict[str, MovieGroup] = {}
    for friend in roster:
        try:
            items = feed_source(friend.feed_username)
        except Exception as exc:
            logger.warning("Skipping %s: %s", friend.display_name, exc)
            continue
        accepted = 0
        for item in items:
            result = _review_from_item(item, friend.display_name, threshold)
            if result is None:
                continue
            title, link, review = result
            group = movie_map.setdefault(title, MovieGroup(general_link=link))
            group.reviews.append(review)
            accepted += 1
        logger.info("%s: %d recent item(s)", friend.display_name, accepted)
    return MappingProxyType(movie_map)


def render_message(movie_map: Mapping[str, MovieGroup]) -> str:
    """Format the weekly round-up as WhatsApp-flavoured text."""
    if not movie_map:
        return EMPTY_DIGEST_MESSAGE

    lines = [DIGEST_HEADER]
    for title in sorted(movie_map):
        group = movie_map[title]
        lines.append(f"🎬 *{title}*\n{group.general_link}\n")
        for review in group.reviews:
            if not review.rating_raw:
                lines.append(f"• *{review.friend_name}* watched 🍿\n")
                continue
            symbol = reaction_symbol(calculate_score(review.rating_raw))
            lines.append(f"• *{review.friend_name}* rated ({review.rating_raw}) {symbol}\n")
        lines.append("\n")
    return "".join(lines)


def _post_gateway(path: str, payload: Dict[str, Any], token: str, action: str) -> requests.Response:
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }
    try:
        response = requests.post(
            f"{WHAPI_BASE_URL}{path}",
            json=payload,
            headers=headers,
            timeout=DEFAULT_HTTP_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise DeliveryError(f"{action} failed! {exc}") from exc
    if not response.ok:
        details = response.text or "No error details provided"
        raise DeliveryError(
            f"{action} failed! Status: {response.status_code}. Details: {details}"
        )
    return response


def send_whatsapp(message: str, token: str, group_id: str) -> str:
    """Post the digest to the group and return the gateway message id."""
    response = _post_gateway(
        "/messages/text", {"to": group_id, "body": message}, token, "Send message"
    )
    logger.info("Sent the WhatsApp message")
    try:
        data = response.json()
    except ValueError as exc:
        raise DeliveryError(f"Could not decode gateway response: {exc}") from exc
    sent = data.get("message") if isinstance(data, dict) else None
    message_id = sent.get("id") if isinstance(sent, dict) else None
    if not isinstance(message_id, str):
        raise DeliveryError("Could not parse message id from gateway response")
    return message_id


def pin_message(message_id: str, token: str) -> None:
    _post_gateway(f"/messages/{message_id}/pin", {"time": "week"}, token, "Pin")
    logger.info("Pinned the message")


def set_presence_offline(token: str) -> None:
    _post_gateway("/users/presence", {"presence": "offline"}, token, "Set to offline")
    logger.info("Set the status to offline")


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise SystemExit(f"Missing {name} env var")
    return value


def collect_movie_map(sheet_url: str) -> Mapping[str, MovieGroup]:
    """Build the week's aggregate, falling back to an empty one on roster errors."""
    try:
        roster = fetch_roster(sheet_url)
        logger.info("Loaded %d friend(s) from roster", len(roster))
        return build_movie_map(roster)
    except RosterError as exc:
        logger.error("Roster unusable, sending empty digest: %s", exc)
        return MappingProxyType({})


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Post a weekly round-up of friends' Letterboxd activity to WhatsApp."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the digest instead of sending it",
    )
    args = parser.parse_args(argv)

    sheet_url = _require_env("SHEET_CSV_URL")
    if args.dry_run:
        print(render_message(collect_movie_map(sheet_url)))
        return

    token = _require_env("WHAPI_TOKEN")
    group_id = _require_env("GROUP_ID")

    message = render_message(collect_movie_map(sheet_url))
    message_id = send_whatsapp(message, token, group_id)
    pin_message(message_id, token)
    set_presence_offline(token)


if __name__ == "__main__":
    main()
