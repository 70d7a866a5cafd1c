"""
PrinterRegistry service

Maps printer ids to their endpoint configuration and remembers when each
printer last polled.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ..models.job import utcnow
from ..models.printer import PrinterEndpoint
from ..core.exceptions import PrinterNotFoundError
from ..utils.logger import get_logger, set_log_context


class PrinterRegistry(ABC):
    """Lookup interface injected into the enqueue and poll services."""

    @abstractmethod
    def get(self, printer_id: str) -> Optional[PrinterEndpoint]:
        """Get a printer by id, None if unknown."""

    @abstractmethod
    def list(self) -> List[PrinterEndpoint]:
        """All registered printers."""

    @abstractmethod
    def register(self, printer: PrinterEndpoint) -> None:
        """Add or replace a printer."""

    @abstractmethod
    def set_active(self, printer_id: str, active: bool) -> PrinterEndpoint:
        """Enable or disable a printer."""

    @abstractmethod
    def record_poll(self, printer_id: str) -> None:
        """Remember that a printer just polled; unknown printers are ignored."""

    @abstractmethod
    def last_poll(self, printer_id: str) -> Optional[datetime]:
        """Time of the printer's most recent poll."""

    def is_active(self, printer_id: str) -> bool:
        printer = self.get(printer_id)
        return printer is not None and printer.active


class InMemoryPrinterRegistry(PrinterRegistry):
    """
    Registry held in memory, usually loaded from configuration.

    Args:
        printers: Initial printer endpoints
        clock: Optional time source for poll timestamps
    """

    def __init__(self, printers: Optional[Iterable[PrinterEndpoint]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow
        self._printers: Dict[str, PrinterEndpoint] = {}
        self._last_poll: Dict[str, datetime] = {}

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="printer_registry")

        for printer in printers or []:
            self.register(printer)

    def get(self, printer_id: str) -> Optional[PrinterEndpoint]:
        return self._printers.get(printer_id)

    def list(self) -> List[PrinterEndpoint]:
        return list(self._printers.values())

    def register(self, printer: PrinterEndpoint) -> None:
        self._printers[printer.id] = printer
        self.logger.info("Printer registered", extra={
            "printer_id": printer.id,
            "display_name": printer.display_name,
            "active": printer.active
        })

    def set_active(self, printer_id: str, active: bool) -> PrinterEndpoint:
        printer = self._printers.get(printer_id)
        if printer is None:
            raise PrinterNotFoundError(printer_id)
        printer.active = active
        self.logger.info("Printer %s", "enabled" if active else "disabled",
                         extra={"printer_id": printer_id})
        return printer

    def record_poll(self, printer_id: str) -> None:
        # Unregistered ids are not tracked; the poll endpoints are unauthenticated.
        if printer_id in self._printers:
            self._last_poll[printer_id] = self.clock()

    def last_poll(self, printer_id: str) -> Optional[datetime]:
        return self._last_poll.get(printer_id)
