"""Shared constants for somaplay."""

TICK_INTERVAL_SECONDS = 0.25

VOLUME_MIN = 0.0
VOLUME_MAX = 2.0
VOLUME_STEP = 0.1
DEFAULT_VOLUME = 1.0

GRACE_PERIOD_SECONDS = 5.0
STALL_SECONDS = 5.0
BACKOFF_BASE_SECONDS = 0.5
BACKOFF_MAX_SECONDS = 30.0

PREFETCH_SECONDS = 5
FALLBACK_BITRATE_KBPS = 128
RING_BUFFER_BYTES = 1024 * 1024
READ_CHUNK_BYTES = 8192
METADATA_QUEUE_SIZE = 32

HISTORY_QUEUE_SIZE = 256
HISTORY_MAX_ENTRIES = 500

DEFAULT_UDP_PORT = 8069
UDP_MAX_DATAGRAM_BYTES = 1024

DEFAULT_DIRECTORY_URL = "https://somafm.com/channels.json"
USER_AGENT = "somaplay/0.1"
