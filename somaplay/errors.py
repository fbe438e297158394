"""Error hierarchy for somaplay.

Network, stream and station errors raised while starting playback are
recovered locally by the session. An AudioDeviceError at startup is fatal.
"""


class RadioError(Exception):
    """Base class for all player errors."""


class NetworkError(RadioError):
    """Transport or HTTP failure."""


class AudioDeviceError(RadioError):
    """No usable audio output device."""


class StreamError(RadioError):
    """Failure while opening, buffering or decoding a stream."""


class ConnectError(StreamError):
    """The stream URL could not be opened."""

    def __init__(self, message: str, url: str | None = None) -> None:
        self.url = url
        super().__init__(message)


class PrefetchError(StreamError):
    """The stream ended or failed before the prefetch target was buffered."""


class StreamCancelled(StreamError):
    """A newer play request superseded this connect attempt."""


class StationError(RadioError):
    """The station directory could not be fetched or parsed."""


class ControlError(RadioError):
    """A control message could not be parsed."""

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)
