"""Reserved keystroke detection for the supervised terminal."""

from collections.abc import Mapping
from dataclasses import dataclass

ESC = b"\x1b"

# xterm function key sequences
STATUS_KEY = b"\x1b[20~"  # F9
SWITCH_KEY = b"\x1b[21~"  # F10

DEFAULT_SEQUENCES: dict[str, bytes] = {
    "status": STATUS_KEY,
    "switch": SWITCH_KEY,
}


@dataclass(slots=True, frozen=True)
class KeyAction:
    """Either bytes to forward to the child or a reserved key that was pressed."""

    forward: bytes = b""
    trigger: str | None = None


class KeyInterceptor:
    """
    Splits raw stdin bytes into forwarded input and reserved key presses.

    Bytes that cannot start a reserved sequence are forwarded immediately. A
    partial escape sequence is held back for at most ``timeout`` seconds; if
    it has not completed by then it is flushed to the child unchanged.
    """

    def __init__(self, sequences: Mapping[str, bytes] | None = None, timeout: float = 0.05) -> None:
        self._sequences = dict(DEFAULT_SEQUENCES if sequences is None else sequences)
        self._timeout = timeout
        self._buffer = b""
        self._deadline: float | None = None

    @property
    def deadline(self) -> float | None:
        """When the held partial sequence must be flushed, if one is held."""
        return self._deadline

    @property
    def pending(self) -> bytes:
        return self._buffer

    def _is_prefix(self, data: bytes) -> bool:
        return any(seq.startswith(data) and seq != data for seq in self._sequences.values())

    def feed(self, data: bytes, now: float) -> list[KeyAction]:
        """Process newly read bytes."""
        self._buffer += data
        actions: list[KeyAction] = []
        forward = b""

        while self._buffer:
            start = self._buffer.find(ESC)
            if start == -1:
                forward += self._buffer
                self._buffer = b""
                break
            if start > 0:
                forward += self._buffer[:start]
                self._buffer = self._buffer[start:]

            matched = next(
                (name for name, seq in self._sequences.items() if self._buffer.startswith(seq)),
                None,
            )
            if matched is not None:
                if forward:
                    actions.append(KeyAction(forward=forward))
                    forward = b""
                actions.append(KeyAction(trigger=matched))
                self._buffer = self._buffer[len(self._sequences[matched]) :]
                continue

            if self._is_prefix(self._buffer):
                break

            # Escape sequence that is not reserved: pass it through up to the next ESC.
            end = self._buffer.find(ESC, 1)
            if end == -1:
                end = len(self._buffer)
            forward += self._buffer[:end]
            self._buffer = self._buffer[end:]

        if forward:
            actions.append(KeyAction(forward=forward))

        if self._buffer:
            if self._deadline is None:
                self._deadline = now + self._timeout
        else:
            self._deadline = None
        return actions

    def flush_expired(self, now: float) -> list[KeyAction]:
        """Release a held partial sequence once its deadline has passed."""
        if not self._buffer or self._deadline is None or now < self._deadline:
            return []
        data = self._buffer
        self._buffer = b""
        self._deadline = None
        return [KeyAction(forward=data)]
