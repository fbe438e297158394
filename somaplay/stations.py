"""Station directory client.

Fetches the SomaFM channel list and resolves each channel's PLS playlist to
a direct stream URL.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .constants import USER_AGENT
from .errors import StationError
from .models import Station

logger = logging.getLogger(__name__)

PLAYLIST_FORMAT = "mp3"
PLAYLIST_QUALITY = "highest"
RESOLVE_WORKERS = 8

type StationResult = list[Station] | StationError


class PlaylistSchema(BaseModel):
    """One playlist entry of a channel."""

    model_config = ConfigDict(extra="ignore")

    url: str
    format: str
    quality: str


class ChannelSchema(BaseModel):
    """A channel as published in channels.json."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    title: str
    description: str = ""
    dj: str = ""
    genre: str = ""
    image: str = ""
    last_playing: str = Field(default="", alias="lastPlaying")
    playlists: list[PlaylistSchema] = Field(default_factory=list)

    def playlist_url(self) -> str | None:
        for playlist in self.playlists:
            if playlist.format == PLAYLIST_FORMAT and playlist.quality == PLAYLIST_QUALITY:
                return playlist.url
        return None


class DirectorySchema(BaseModel):
    """Top-level channels.json document."""

    model_config = ConfigDict(extra="ignore")

    channels: list[ChannelSchema]


def parse_pls(text: str) -> str:
    """Return the first stream URL of a PLS playlist.

    Raises:
        StationError: No `FileN=` entry is present.
    """
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.lower().startswith("file"):
            continue
        _, sep, url = stripped.partition("=")
        if sep and url.strip():
            return url.strip()
    msg = "No stream URL found in PLS file"
    raise StationError(msg)


def parse_directory(payload: object) -> list[ChannelSchema]:
    """Validate a decoded channels.json document.

    Raises:
        StationError: The document does not match the expected layout.
    """
    try:
        return DirectorySchema.model_validate(payload).channels
    except ValidationError as e:
        msg = f"Invalid station directory: {e}"
        raise StationError(msg) from e


class StationDirectory:
    """Fetches and resolves the station list over HTTP."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        http: requests.Session | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._http = http or requests.Session()
        self._http.headers.update({"User-Agent": USER_AGENT})

    def fetch_all(self) -> list[Station]:
        """Fetch every station with a resolvable mp3 stream.

        Channels whose playlist cannot be resolved are skipped.

        Raises:
            StationError: The directory is unreachable or malformed, or no
                station could be resolved.
        """
        try:
            response = self._http.get(self._url, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            msg = f"Failed to fetch station directory: {e}"
            raise StationError(msg) from e
        except ValueError as e:
            msg = f"Station directory is not valid JSON: {e}"
            raise StationError(msg) from e

        channels = parse_directory(payload)
        with ThreadPoolExecutor(
            max_workers=RESOLVE_WORKERS, thread_name_prefix="pls-resolve"
        ) as executor:
            resolved = list(executor.map(self._resolve, channels))

        stations = [station for station in resolved if station is not None]
        if channels and not stations:
            msg = "No station stream could be resolved"
            raise StationError(msg)

        logger.info("Resolved %d of %d stations", len(stations), len(channels))
        return stations

    def _resolve(self, channel: ChannelSchema) -> Station | None:
        playlist_url = channel.playlist_url()
        if playlist_url is None:
            logger.warning("No %s playlist for %s", PLAYLIST_FORMAT, channel.id)
            return None

        try:
            response = self._http.get(playlist_url, timeout=self._timeout)
            response.raise_for_status()
            stream_url = parse_pls(response.text)
        except (requests.RequestException, StationError) as e:
            logger.warning("Skipping %s: %s", channel.id, e)
            return None

        return Station(
            id=channel.id,
            title=channel.title,
            description=channel.description,
            dj=channel.dj,
            genre=channel.genre,
            url=stream_url,
            image=channel.image,
            last_playing=channel.last_playing,
        )


def start_station_fetch(
    directory: StationDirectory, results: queue.Queue[StationResult]
) -> threading.Thread:
    """Fetch the directory once on a background thread.

    Exactly one item is put on `results`: the station list or the error.
    """

    def run() -> None:
        try:
            results.put(directory.fetch_all())
        except StationError as e:
            logger.error("Station directory unavailable: %s", e)
            results.put(e)

    thread = threading.Thread(target=run, name="station-fetch", daemon=True)
    thread.start()
    return thread
