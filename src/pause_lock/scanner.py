import select
import sys
from enum import Enum
from typing import Protocol, TextIO

from loguru import logger
from pydantic import BaseModel

from pause_lock.schema import normalize_identifier


class ScanFailure(str, Enum):
    UNSUPPORTED = "unsupported"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    READ_FAILED = "read_failed"


class ScanOutcome(BaseModel):
    identifier: str | None = None
    failure: ScanFailure | None = None

    @classmethod
    def read(cls, identifier: str) -> "ScanOutcome":
        return cls(identifier=normalize_identifier(identifier))

    @classmethod
    def failed(cls, failure: ScanFailure) -> "ScanOutcome":
        return cls(failure=failure)


class ScanService(Protocol):
    def scan(self) -> ScanOutcome: ...


class KeyboardWedgeScanner:
    """
    Reads a tag UID from a USB reader in keyboard-emulation mode.

    Such readers type the UID followed by Enter, so a scan is one line on
    stdin. Ctrl+C cancels the scan.
    """

    def __init__(self, timeout: float = 30.0, stream: TextIO | None = None):
        self.timeout = timeout
        self.stream = stream or sys.stdin

    def scan(self) -> ScanOutcome:
        if not self.stream.isatty():
            logger.warning("Tag scanning needs an interactive terminal")
            return ScanOutcome.failed(ScanFailure.UNSUPPORTED)

        logger.debug(f"Waiting up to {self.timeout:.0f}s for a tag")
        try:
            ready, _, _ = select.select([self.stream], [], [], self.timeout)
            if not ready:
                return ScanOutcome.failed(ScanFailure.TIMEOUT)
            line = self.stream.readline()
        except KeyboardInterrupt:
            return ScanOutcome.failed(ScanFailure.CANCELLED)
        except (OSError, ValueError) as e:
            logger.error(f"Reading tag failed: {e}")
            return ScanOutcome.failed(ScanFailure.READ_FAILED)

        identifier = normalize_identifier(line)
        if not identifier:
            return ScanOutcome.failed(ScanFailure.READ_FAILED)
        return ScanOutcome(identifier=identifier)
