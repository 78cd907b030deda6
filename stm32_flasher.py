#!/usr/bin/env python3
"""
stm32_flasher.py — STM32 UART Bootloader Flash Tool
=====================================================

Flashes a raw firmware image into an STM32 microcontroller through the
ROM bootloader that ST ships in system memory. Pull BOOT0 high, reset the
chip, point this tool at the USART the bootloader listens on, and it does
the rest: sync, identify, unprotect, erase, program, and optionally jump
into the new firmware.

Target Hardware:
    MCU:    STM32F1 medium/high density, STM32F2/F4 (0x0413), STM32F05x
    Link:   USART1 (PA9/PA10), 8 data bits, EVEN parity, 1 stop bit
    Flash:  mapped at 0x08000000

Protocol:
    ST AN3155 "USART protocol used in the STM32 bootloader".
    Every command is [opcode, ~opcode]; every multi-byte argument frame
    ends with the XOR of its bytes. The device answers 0x79 (ACK) or
    0x1F (NACK). Write Memory carries at most 256 bytes per block.

Architecture:
    Single-file module with a full CLI.
    Transport → BLFraming → BootloaderProtocol → FlashProgrammer → Session.
    LoopbackTransport simulates the bootloader for offline testing.

WARNING:
    A failure after the erase step leaves the chip erased. Nothing is rolled
    back; just run the tool again while the board is still in bootloader mode.

Requires: Python 3.10+, pyserial, rich
Optional: ftd2xx (D2XX transport)

MIT License

Copyright (c) 2026 STM32 UART Flasher contributors

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 0 — IMPORTS & GLOBALS
# ═══════════════════════════════════════════════════════════════════════

from __future__ import annotations

import sys
import time
import struct
import logging
import operator
import argparse
import threading
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field
from enum import IntEnum, Enum, auto
from functools import partial, reduce
from typing import Optional, Callable, List, Tuple, Dict, BinaryIO

import serial
from rich.logging import RichHandler

# FTDI D2XX — optional
try:
    import ftd2xx
    D2XX_AVAILABLE = True
except ImportError:
    D2XX_AVAILABLE = False

# ── Version & Metadata ──
__version__ = "0.1.0"
__app_name__ = "STM32 UART Flasher"
__target__ = "STM32 ROM bootloader (AN3155, USART)"

# ── Logging Setup ──
LOG_DIR = Path(__file__).resolve().parent / "logs"


def setup_logging(
    name: str = "stm32_flasher",
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Configure and return a logger.

    Args:
        name:          Logger name and log-file prefix.
        level:         Root level (DEBUG captures every TX/RX frame to file).
        console_level: Level for console/terminal output.
        log_dir:       Override log directory (default: logs/ next to this file).
        rich_console:  Use Rich handler for the console, plain stderr otherwise.

    Returns:
        Configured ``logging.Logger`` instance.

    Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
    """
    log_dir = Path(log_dir) if log_dir else LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)

    # ── File handler: captures everything (DEBUG+) ──
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"{name}_{ts}.log"
    file_fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(file_fmt)
    logger.addHandler(fh)

    # ── Console handler ──
    if rich_console:
        ch = RichHandler(
            level=console_level,
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
    else:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S",
        ))
    ch.setLevel(console_level)
    logger.addHandler(ch)

    logger.info("=" * 60)
    logger.info("Logger initialized: %s", name)
    logger.info("Log file: %s", log_file)
    logger.info("Console level: %s", logging.getLevelName(console_level))
    logger.info("=" * 60)

    return logger

log = logging.getLogger("stm32_flasher")


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1 — CONSTANTS & PROTOCOL DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════

class BLCommand(IntEnum):
    """AN3155 bootloader command opcodes."""
    GET = 0x00
    GET_VERSION = 0x01
    GET_ID = 0x02
    READ_MEMORY = 0x11
    GO = 0x21
    WRITE_MEMORY = 0x31
    ERASE = 0x43
    EXTENDED_ERASE = 0x44
    WRITE_PROTECT = 0x63
    WRITE_UNPROTECT = 0x73
    READOUT_PROTECT = 0x82
    READOUT_UNPROTECT = 0x92

SYNC_BYTE = 0x7F
ACK = 0x79
NACK = 0x1F

# Minimum bootloader protocol version (major.minor)
BL_VERSION_MAJOR = 2
BL_VERSION_MINOR = 1


def bl_mkver(major: int, minor: int) -> int:
    """Pack a bootloader version the way the compatibility check compares it."""
    return major * 256 + minor

MIN_BOOTLOADER_VERSION = bl_mkver(BL_VERSION_MAJOR, BL_VERSION_MINOR)

# Bootloaders with this major version only understand Extended Erase (0x44)
EXTENDED_ERASE_MAJOR = 3

# Chip IDs reported by GET ID that this tool knows how to flash
SUPPORTED_CHIP_IDS = frozenset({0x0410, 0x0414, 0x0413, 0x0440})

CHIP_NAMES: Dict[int, str] = {
    0x0410: "STM32F10xxx medium-density",
    0x0413: "STM32F405/407/415/417",
    0x0414: "STM32F10xxx high-density",
    0x0440: "STM32F05xxx / STM32F030x8",
}

# Memory map
FLASH_BASE = 0x08000000
MAX_WRITE_BLOCK = 256          # Write Memory payload limit (N-1 fits a byte)

# Default comm settings
DEFAULT_BAUD = 9600
DEFAULT_TIMEOUT_MS = 2000
ERASE_TIMEOUT_MS = 30000       # mass erase of a 1MB part takes ~20s
DEFAULT_SYNC_ATTEMPTS = 60
DEFAULT_SYNC_DELAY_S = 1.0

# Progress reporting granularity (percent)
PROGRESS_STEP_PCT = 10


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2 — ERRORS
# ═══════════════════════════════════════════════════════════════════════

class LoaderError(Exception):
    """Base class for every fatal flasher error. ``step`` names the failing phase."""
    step: Optional[str] = None

class TransportError(LoaderError):
    """Raised when the serial link cannot be opened, read, or written."""

class HandshakeTimeout(LoaderError):
    """No ACK to the sync byte within the retry budget."""

    def __init__(self, attempts: int):
        super().__init__(f"no ACK to 0x{SYNC_BYTE:02X} after {attempts} attempts")
        self.attempts = attempts

class OperationCancelled(LoaderError):
    """The operation was cancelled by the user."""

class CompatibilityError(LoaderError):
    """The device answered, but this tool does not support it."""

class VersionUnsupported(CompatibilityError):
    def __init__(self, major: int, minor: int):
        super().__init__(
            f"bootloader version {major}.{minor} is older than "
            f"{BL_VERSION_MAJOR}.{BL_VERSION_MINOR}"
        )
        self.major = major
        self.minor = minor

class ChipUnsupported(CompatibilityError):
    def __init__(self, chip_id: int):
        super().__init__(f"chip ID 0x{chip_id:04X} is not supported")
        self.chip_id = chip_id

class ProtocolErrorKind(Enum):
    NO_RESPONSE = "no response"
    NACK = "NACK"
    UNEXPECTED_RESPONSE = "unexpected response"
    MALFORMED_PAYLOAD = "malformed payload"

class ProtocolError(LoaderError):
    """A bootloader command was refused or answered badly."""

    def __init__(self, step: str, kind: ProtocolErrorKind, detail: str = ""):
        msg = f"{step}: {kind.value}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
        self.step = step
        self.kind = kind
        self.detail = detail

class SessionStateError(LoaderError):
    """A session step was requested out of order."""

class DataSourceError(LoaderError):
    """The firmware data source disagrees with its declared size."""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3 — BOOTLOADER FRAMING
# ═══════════════════════════════════════════════════════════════════════

class Response(Enum):
    ACK = auto()
    NACK = auto()
    UNEXPECTED = auto()

class BLFraming:
    """
    Byte-level framing for the AN3155 USART protocol.

    Command frame:   [opcode] [opcode ^ 0xFF]
    Argument frame:  [b0] [b1] ... [bn] [b0 ^ b1 ^ ... ^ bn]
    Address frame:   4-byte big-endian address + XOR checksum
    Write block:     [N-1] [data * N] [XOR over N-1 and data]
    """

    @staticmethod
    def checksum(data: bytes) -> int:
        """XOR of all bytes (0 for empty input)."""
        return reduce(operator.xor, data, 0)

    @staticmethod
    def encode_command(opcode: int) -> bytes:
        return bytes([opcode & 0xFF, ~opcode & 0xFF])

    @staticmethod
    def encode_payload(payload: bytes) -> bytes:
        """Append the XOR checksum to an argument frame."""
        return bytes(payload) + bytes([BLFraming.checksum(payload)])

    @staticmethod
    def encode_address(address: int) -> bytes:
        if not 0 <= address <= 0xFFFFFFFF:
            raise ValueError(f"address out of range: 0x{address:X}")
        return BLFraming.encode_payload(struct.pack(">I", address))

    @staticmethod
    def encode_write_block(data: bytes) -> bytes:
        if not 1 <= len(data) <= MAX_WRITE_BLOCK:
            raise ValueError(f"write block must be 1..{MAX_WRITE_BLOCK} bytes, got {len(data)}")
        return BLFraming.encode_payload(bytes([len(data) - 1]) + bytes(data))

    @staticmethod
    def encode_mass_erase() -> bytes:
        # N = 0xFF selects global erase; second byte is its complement
        return bytes([0xFF, 0x00])

    @staticmethod
    def encode_extended_mass_erase() -> bytes:
        return BLFraming.encode_payload(b"\xFF\xFF")

    @staticmethod
    def decode_ack(byte: int) -> Response:
        if byte == ACK:
            return Response.ACK
        if byte == NACK:
            return Response.NACK
        return Response.UNEXPECTED

    @staticmethod
    def verify(frame: bytes) -> bool:
        """True if an argument frame's trailing checksum matches."""
        return len(frame) > 1 and BLFraming.checksum(frame) == 0


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4 — TRANSPORT LAYER (Serial / D2XX / Loopback)
# ═══════════════════════════════════════════════════════════════════════

class BaseTransport:
    """Abstract base for all serial transports."""

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def read(self, count: int, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> bytes:
        """Read up to *count* bytes; a short result means the timeout expired."""
        raise NotImplementedError

    def flush_input(self) -> None:
        raise NotImplementedError

    def flush_output(self) -> None:
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    @property
    def bytes_available(self) -> int:
        raise NotImplementedError


class PySerialTransport(BaseTransport):
    """PySerial (COM port / tty / VCP) transport, 8E1 as the bootloader requires."""

    def __init__(self, port: str, baud: int = DEFAULT_BAUD):
        self.port = port
        self.baud = baud
        self._serial: Optional[serial.Serial] = None

    def open(self) -> None:
        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_EVEN,
                stopbits=serial.STOPBITS_ONE,
                timeout=DEFAULT_TIMEOUT_MS / 1000.0,
                write_timeout=1.0,
            )
            log.info("Opened %s at %d baud (8E1)", self.port, self.baud)
        except (serial.SerialException, ValueError) as e:
            raise TransportError(f"Failed to open {self.port}: {e}") from e

    def close(self) -> None:
        if self._serial and self._serial.is_open:
            self._serial.close()
            log.info("Closed %s", self.port)

    def write(self, data: bytes) -> int:
        if not self._serial or not self._serial.is_open:
            raise TransportError("Port not open")
        try:
            return self._serial.write(data)
        except serial.SerialException as e:
            raise TransportError(f"Write to {self.port} failed: {e}") from e

    def read(self, count: int, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> bytes:
        if not self._serial or not self._serial.is_open:
            raise TransportError("Port not open")
        try:
            self._serial.timeout = timeout_ms / 1000.0
            return bytes(self._serial.read(count))
        except (serial.SerialException, ValueError) as e:
            raise TransportError(f"Read from {self.port} failed: {e}") from e

    def flush_input(self) -> None:
        if self._serial and self._serial.is_open:
            self._serial.reset_input_buffer()

    def flush_output(self) -> None:
        if self._serial and self._serial.is_open:
            self._serial.reset_output_buffer()

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @property
    def bytes_available(self) -> int:
        if self._serial and self._serial.is_open:
            return self._serial.in_waiting
        return 0


class D2XXTransport(BaseTransport):
    """FTDI D2XX direct USB transport (lower latency than the VCP driver)."""

    def __init__(self, device_index: int = 0, baud: int = DEFAULT_BAUD):
        self.device_index = device_index
        self.baud = baud
        self._device = None

    def open(self) -> None:
        if not D2XX_AVAILABLE:
            raise TransportError("ftd2xx not installed — pip install ftd2xx")
        try:
            self._device = ftd2xx.open(self.device_index)
            self._device.setBaudRate(self.baud)
            self._device.setDataCharacteristics(
                ftd2xx.defines.BITS_8,
                ftd2xx.defines.STOP_BITS_1,
                ftd2xx.defines.PARITY_EVEN,
            )
            self._device.setTimeouts(DEFAULT_TIMEOUT_MS, DEFAULT_TIMEOUT_MS)
            self._device.setLatencyTimer(2)
            self._device.purge(ftd2xx.defines.PURGE_RX | ftd2xx.defines.PURGE_TX)
            log.info("Opened FTDI D2XX device %d at %d baud (8E1)", self.device_index, self.baud)
        except ftd2xx.DeviceError as e:
            self._device = None
            raise TransportError(f"Failed to open D2XX device {self.device_index}: {e}") from e

    def close(self) -> None:
        if self._device:
            try:
                self._device.close()
            except ftd2xx.DeviceError as e:
                log.warning("D2XX close failed: %s", e)
            self._device = None

    def write(self, data: bytes) -> int:
        if not self._device:
            raise TransportError("D2XX device not open")
        try:
            return self._device.write(bytes(data))
        except ftd2xx.DeviceError as e:
            raise TransportError(f"D2XX write failed: {e}") from e

    def read(self, count: int, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> bytes:
        if not self._device:
            raise TransportError("D2XX device not open")
        try:
            self._device.setTimeouts(timeout_ms, timeout_ms)
            return bytes(self._device.read(count))
        except ftd2xx.DeviceError as e:
            raise TransportError(f"D2XX read failed: {e}") from e

    def flush_input(self) -> None:
        if self._device:
            self._device.purge(ftd2xx.defines.PURGE_RX)

    def flush_output(self) -> None:
        if self._device:
            self._device.purge(ftd2xx.defines.PURGE_TX)

    @property
    def is_open(self) -> bool:
        return self._device is not None

    @property
    def bytes_available(self) -> int:
        if self._device:
            return self._device.getQueueStatus()
        return 0


class LoopbackTransport(BaseTransport):
    """
    In-memory STM32 bootloader for testing without hardware.

    Responds to whole frames as the host writes them, following the AN3155
    sequences. Knobs for failure testing:

        ignore_syncs      number of initial 0x7F bytes to leave unanswered
        nack_commands     opcodes answered with NACK
        silent_commands   opcodes that get no answer at all (timeout)
        fail_addresses    Write Memory target addresses whose data block is NACKed

    Everything the host sends is kept in ``tx_log``; programmed blocks land in
    ``flash`` keyed by address.
    """

    def __init__(self, chip_id: int = 0x0410, bootloader_version: int = 0x22,
                 ignore_syncs: int = 0, nack_commands=(), silent_commands=(),
                 fail_addresses=(), commands: Optional[bytes] = None):
        self.chip_id = chip_id
        self.bootloader_version = bootloader_version
        self.ignore_syncs = ignore_syncs
        self.nack_commands = set(nack_commands)
        self.silent_commands = set(silent_commands)
        self.fail_addresses = set(fail_addresses)
        if commands is None:
            erase_cmd = (BLCommand.EXTENDED_ERASE
                         if bootloader_version >> 4 == EXTENDED_ERASE_MAJOR
                         else BLCommand.ERASE)
            commands = bytes([
                BLCommand.GET, BLCommand.GET_VERSION, BLCommand.GET_ID,
                BLCommand.READ_MEMORY, BLCommand.GO, BLCommand.WRITE_MEMORY,
                erase_cmd, BLCommand.WRITE_PROTECT, BLCommand.WRITE_UNPROTECT,
                BLCommand.READOUT_PROTECT, BLCommand.READOUT_UNPROTECT,
            ])
        self.commands = bytes(commands)

        self._rx_buffer = bytearray()
        self._opened = False
        self._synced = False
        self._stage: Optional[Callable[[bytes], None]] = None
        self.tx_log: List[bytes] = []
        self.command_log: List[int] = []
        self.sync_count = 0
        self.flash: Dict[int, bytes] = {}
        self.erase_count = 0
        self.unprotect_count = 0
        self.go_address: Optional[int] = None

    def open(self) -> None:
        self._opened = True
        log.info("Loopback bootloader opened (chip 0x%04X, v%d.%d)",
                 self.chip_id, self.bootloader_version >> 4, self.bootloader_version & 0x0F)

    def close(self) -> None:
        self._opened = False

    def write(self, data: bytes) -> int:
        if not self._opened:
            raise TransportError("Loopback transport not open")
        self.tx_log.append(bytes(data))
        self._simulate_response(bytes(data))
        return len(data)

    def read(self, count: int, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> bytes:
        if not self._opened:
            raise TransportError("Loopback transport not open")
        result = bytes(self._rx_buffer[:count])
        del self._rx_buffer[:count]
        return result

    def flush_input(self) -> None:
        self._rx_buffer.clear()

    def flush_output(self) -> None:
        pass

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def bytes_available(self) -> int:
        return len(self._rx_buffer)

    @property
    def written_image(self) -> bytes:
        """Programmed blocks concatenated in address order."""
        return b"".join(self.flash[addr] for addr in sorted(self.flash))

    # ── Simulated device ──

    def _ack(self) -> None:
        self._rx_buffer.append(ACK)

    def _nack(self) -> None:
        self._rx_buffer.append(NACK)

    def _simulate_response(self, data: bytes) -> None:
        """Generate the bootloader's answer to one host frame."""
        if self._stage is not None:
            stage, self._stage = self._stage, None
            stage(data)
            return

        if data == bytes([SYNC_BYTE]):
            self.sync_count += 1
            if self.sync_count > self.ignore_syncs:
                if self._synced:
                    self._nack()
                else:
                    self._synced = True
                    self._ack()
            return

        if not self._synced:
            return
        if len(data) != 2 or data[1] != (~data[0] & 0xFF):
            self._nack()
            return

        opcode = data[0]
        self.command_log.append(opcode)
        if opcode in self.silent_commands:
            return
        if opcode in self.nack_commands or opcode not in self.commands:
            self._nack()
            return

        if opcode == BLCommand.GET:
            self._ack()
            self._rx_buffer.append(len(self.commands))
            self._rx_buffer.append(self.bootloader_version)
            self._rx_buffer.extend(self.commands)
            self._ack()

        elif opcode == BLCommand.GET_ID:
            self._ack()
            self._rx_buffer.extend([0x01, (self.chip_id >> 8) & 0xFF, self.chip_id & 0xFF])
            self._ack()

        elif opcode == BLCommand.WRITE_UNPROTECT:
            self._ack()
            self._ack()
            self.unprotect_count += 1
            # System reset after the option bytes are rewritten
            self._synced = False

        elif opcode == BLCommand.ERASE:
            self._ack()
            self._stage = self._on_erase

        elif opcode == BLCommand.EXTENDED_ERASE:
            self._ack()
            self._stage = self._on_extended_erase

        elif opcode == BLCommand.WRITE_MEMORY:
            self._ack()
            self._stage = self._on_write_address

        elif opcode == BLCommand.GO:
            self._ack()
            self._stage = self._on_go_address

        else:
            self._nack()

    def _on_erase(self, data: bytes) -> None:
        if data == BLFraming.encode_mass_erase():
            self.flash.clear()
            self.erase_count += 1
            self._ack()
        else:
            self._nack()

    def _on_extended_erase(self, data: bytes) -> None:
        if data == BLFraming.encode_extended_mass_erase():
            self.flash.clear()
            self.erase_count += 1
            self._ack()
        else:
            self._nack()

    def _on_write_address(self, data: bytes) -> None:
        if len(data) == 5 and BLFraming.verify(data):
            address = struct.unpack(">I", data[:4])[0]
            self._ack()
            self._stage = partial(self._on_write_data, address)
        else:
            self._nack()

    def _on_write_data(self, address: int, data: bytes) -> None:
        if len(data) < 3 or len(data) != data[0] + 3 or not BLFraming.verify(data):
            self._nack()
            return
        if address in self.fail_addresses:
            self._nack()
            return
        self.flash[address] = bytes(data[1:-1])
        self._ack()

    def _on_go_address(self, data: bytes) -> None:
        if len(data) == 5 and BLFraming.verify(data):
            self.go_address = struct.unpack(">I", data[:4])[0]
            self._ack()
            # Bootloader hands the core over to the user application
            self._synced = False
        else:
            self._nack()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5 — BOOTLOADER PROTOCOL ENGINE
# ═══════════════════════════════════════════════════════════════════════

class BootloaderProtocol:
    """
    One method per bootloader command.

    Each call sends its frames, waits for every ACK the command requires,
    and either returns the typed result or raises ProtocolError naming the
    command. Nothing is retried here: re-sending half of a multi-frame
    command desynchronizes the device's parser.
    """

    def __init__(self, transport: BaseTransport, timeout_ms: int = DEFAULT_TIMEOUT_MS,
                 erase_timeout_ms: int = ERASE_TIMEOUT_MS):
        self.transport = transport
        self.timeout_ms = timeout_ms
        self.erase_timeout_ms = erase_timeout_ms

    # ── Low-Level I/O ──

    def _send(self, frame: bytes) -> None:
        log.debug("TX [%d]: %s", len(frame), frame.hex(" "))
        self.transport.write(frame)

    def _expect_ack(self, step: str, timeout_ms: Optional[int] = None) -> None:
        if timeout_ms is None:
            timeout_ms = self.timeout_ms
        raw = self.transport.read(1, timeout_ms=timeout_ms)
        if not raw:
            raise ProtocolError(step, ProtocolErrorKind.NO_RESPONSE)
        log.debug("RX: %02x", raw[0])
        response = BLFraming.decode_ack(raw[0])
        if response is Response.NACK:
            raise ProtocolError(step, ProtocolErrorKind.NACK)
        if response is Response.UNEXPECTED:
            raise ProtocolError(step, ProtocolErrorKind.UNEXPECTED_RESPONSE, f"0x{raw[0]:02X}")

    def _receive(self, step: str, count: int) -> bytes:
        data = self.transport.read(count, timeout_ms=self.timeout_ms)
        if not data:
            raise ProtocolError(step, ProtocolErrorKind.NO_RESPONSE)
        if len(data) < count:
            raise ProtocolError(step, ProtocolErrorKind.MALFORMED_PAYLOAD,
                                f"expected {count} bytes, got {len(data)}")
        log.debug("RX [%d]: %s", len(data), data.hex(" "))
        return data

    def _command(self, opcode: int, step: str) -> None:
        self.transport.flush_input()
        self._send(BLFraming.encode_command(opcode))
        self._expect_ack(step)

    # ── Commands ──

    def sync(self) -> bool:
        """Send the 0x7F autobaud byte. True on ACK; NACK or silence is False."""
        stale = self.transport.bytes_available
        if stale:
            log.debug("Discarding %d stale byte(s) before sync", stale)
        self.transport.flush_input()
        self._send(bytes([SYNC_BYTE]))
        raw = self.transport.read(1, timeout_ms=self.timeout_ms)
        if not raw:
            log.debug("Sync: no response")
            return False
        log.debug("Sync RX: %02x", raw[0])
        return BLFraming.decode_ack(raw[0]) is Response.ACK

    def get_version(self) -> Tuple[int, int, bytes]:
        """GET: returns (major, minor, supported command opcodes)."""
        step = "get version"
        self._command(BLCommand.GET, step)
        count = self._receive(step, 1)[0] + 1   # version byte + N command bytes
        payload = self._receive(step, count)
        self._expect_ack(step)
        version = payload[0]
        return version >> 4, version & 0x0F, bytes(payload[1:])

    def get_chip_id(self) -> int:
        step = "get chip id"
        self._command(BLCommand.GET_ID, step)
        n = self._receive(step, 1)[0]
        if n != 1:
            raise ProtocolError(step, ProtocolErrorKind.MALFORMED_PAYLOAD,
                                f"expected a 2-byte ID, device announced {n + 1}")
        pid = self._receive(step, 2)
        self._expect_ack(step)
        return (pid[0] << 8) | pid[1]

    def write_unprotect(self) -> None:
        """Clear write protection on all sectors. The device resets afterwards."""
        step = "write unprotect"
        self._command(BLCommand.WRITE_UNPROTECT, step)
        self._expect_ack(step, timeout_ms=self.erase_timeout_ms)

    def erase(self) -> None:
        """Standard Erase (0x43), global."""
        step = "erase"
        self._command(BLCommand.ERASE, step)
        self._send(BLFraming.encode_mass_erase())
        self._expect_ack(step, timeout_ms=self.erase_timeout_ms)

    def extended_erase(self) -> None:
        """Extended Erase (0x44), global mass erase."""
        step = "extended erase"
        self._command(BLCommand.EXTENDED_ERASE, step)
        self._send(BLFraming.encode_extended_mass_erase())
        self._expect_ack(step, timeout_ms=self.erase_timeout_ms)

    def write_memory(self, address: int, data: bytes) -> None:
        step = f"write memory @ 0x{address:08X}"
        block = BLFraming.encode_write_block(data)
        self._command(BLCommand.WRITE_MEMORY, step)
        self._send(BLFraming.encode_address(address))
        self._expect_ack(step)
        self._send(block)
        self._expect_ack(step)

    def go(self, address: int) -> None:
        step = "go"
        self._command(BLCommand.GO, step)
        self._send(BLFraming.encode_address(address))
        self._expect_ack(step)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 6 — FLASH PROGRAMMER
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ProgramSession:
    """Progress of one programming transfer."""
    total_bytes: int
    bytes_written: int = 0
    current_address: int = FLASH_BASE
    blocks_written: int = 0

    @property
    def complete(self) -> bool:
        return self.bytes_written == self.total_bytes


class ProgressThreshold:
    """
    Progress policy: turns a stream of byte counts into one call per crossed
    10% boundary (10, 20, ... 100), in order, each at most once.
    """

    def __init__(self, total_size: int, on_threshold: Callable[[int], None],
                 step_pct: int = PROGRESS_STEP_PCT):
        self.total_size = total_size
        self.on_threshold = on_threshold
        self.step_pct = step_pct
        self.next_threshold = step_pct

    def __call__(self, bytes_written: int) -> None:
        if self.total_size <= 0:
            return
        pct = min(bytes_written * 100 // self.total_size, 100)
        while self.next_threshold <= pct:
            self.on_threshold(self.next_threshold)
            self.next_threshold += self.step_pct


class FlashProgrammer:
    """Streams a firmware image into flash in Write Memory sized blocks."""

    def __init__(self, protocol: BootloaderProtocol, base_address: int = FLASH_BASE,
                 chunk_size: int = MAX_WRITE_BLOCK):
        if not 1 <= chunk_size <= MAX_WRITE_BLOCK:
            raise ValueError(f"chunk size must be 1..{MAX_WRITE_BLOCK}, got {chunk_size}")
        self.protocol = protocol
        self.base_address = base_address
        self.chunk_size = chunk_size

    def program(self, data_source: Callable[[int], bytes], total_size: int,
                on_progress: Optional[Callable[[int], None]] = None) -> ProgramSession:
        """
        Pull chunks from *data_source* until it returns nothing and write each
        one at the next address.

        Args:
            data_source: ``read(max_len) -> bytes``; empty bytes ends the transfer.
            total_size:  Bytes the source will produce in total.
            on_progress: Called with the running byte count after every ACKed block.

        A zero *total_size* is a no-op: the source is not read and
        *on_progress* is never called.
        """
        if total_size < 0:
            raise ValueError(f"total size must not be negative: {total_size}")
        session = ProgramSession(total_bytes=total_size, current_address=self.base_address)
        if total_size == 0:
            log.info("Nothing to program (0 bytes)")
            return session

        start_time = time.monotonic()
        while True:
            try:
                chunk = data_source(self.chunk_size)
            except OSError as e:
                raise DataSourceError(
                    f"reading firmware failed after {session.bytes_written} bytes: {e}") from e
            if not chunk:
                break
            if len(chunk) > self.chunk_size:
                raise DataSourceError(
                    f"data source returned {len(chunk)} bytes, limit is {self.chunk_size}")
            if session.bytes_written + len(chunk) > total_size:
                raise DataSourceError(
                    f"data source produced more than the declared {total_size} bytes")

            self.protocol.write_memory(session.current_address, bytes(chunk))
            session.current_address += len(chunk)
            session.bytes_written += len(chunk)
            session.blocks_written += 1
            if on_progress:
                on_progress(session.bytes_written)

        if not session.complete:
            raise DataSourceError(
                f"data source ended after {session.bytes_written} of {total_size} bytes")

        elapsed = time.monotonic() - start_time
        rate = session.bytes_written / elapsed if elapsed > 0 else 0
        log.info("Programmed %d bytes in %d blocks (%.1fs, %.0f B/s)",
                 session.bytes_written, session.blocks_written, elapsed, rate)
        return session


# ═══════════════════════════════════════════════════════════════════════
# SECTION 7 — SESSION (HANDSHAKE & SEQUENCING)
# ═══════════════════════════════════════════════════════════════════════

class SessionState(Enum):
    """Session state machine."""
    DISCONNECTED = auto()
    CONNECTED = auto()
    VERSION_KNOWN = auto()
    IDENTIFIED = auto()
    UNPROTECTED = auto()
    ERASED = auto()
    PROGRAMMED = auto()
    EXECUTING = auto()
    ERROR = auto()

class EraseStrategy(Enum):
    STANDARD = "standard"
    EXTENDED = "extended"


def select_erase_strategy(major: int) -> EraseStrategy:
    """Bootloader v3.x dropped Erase (0x43) in favour of Extended Erase (0x44)."""
    if major == EXTENDED_ERASE_MAJOR:
        return EraseStrategy.EXTENDED
    return EraseStrategy.STANDARD


def check_version(major: int, minor: int) -> None:
    if bl_mkver(major, minor) < MIN_BOOTLOADER_VERSION:
        raise VersionUnsupported(major, minor)


def check_chip_id(chip_id: int) -> None:
    if chip_id not in SUPPORTED_CHIP_IDS:
        raise ChipUnsupported(chip_id)


@dataclass(frozen=True)
class DeviceIdentity:
    """What the bootloader told us about itself during the handshake."""
    major: int
    minor: int
    chip_id: int
    commands: bytes = b""

    @property
    def version(self) -> int:
        return bl_mkver(self.major, self.minor)

    @property
    def chip_name(self) -> str:
        return CHIP_NAMES.get(self.chip_id, "unknown")


@dataclass
class RetryPolicy:
    """
    Handshake retry policy: at most *max_attempts* sync bytes, *delay_s*
    apart. *deadline_s*, when set, also bounds the loop by wall time.
    """
    max_attempts: int = DEFAULT_SYNC_ATTEMPTS
    delay_s: float = DEFAULT_SYNC_DELAY_S
    deadline_s: Optional[float] = None


@dataclass
class SessionConfig:
    """Session configuration."""
    baud: int = DEFAULT_BAUD
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    erase_timeout_ms: int = ERASE_TIMEOUT_MS
    chunk_size: int = MAX_WRITE_BLOCK
    flash_base: int = FLASH_BASE
    skip_programming: bool = False
    send_go: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)


class Session:
    """
    Drives one flashing session end to end:
    connect → version → chip ID → [unprotect → erase → program] → [go]

    Every step checks the state it is called from, so the device never sees
    an erase before it has been identified or a write before an erase. Any
    failure moves the session to ERROR, records ``failed_step`` and is
    re-raised; nothing is rolled back.
    """

    def __init__(self, transport: BaseTransport, config: SessionConfig = None,
                 protocol: BootloaderProtocol = None):
        self.transport = transport
        self.config = config or SessionConfig()
        self.protocol = protocol or BootloaderProtocol(
            transport, self.config.timeout_ms, self.config.erase_timeout_ms)
        self.state = SessionState.DISCONNECTED
        self.identity: Optional[DeviceIdentity] = None
        self.erase_strategy: Optional[EraseStrategy] = None
        self.program_session: Optional[ProgramSession] = None
        self.failed_step: Optional[str] = None
        self.sync_attempts = 0
        self._version: Optional[Tuple[int, int, bytes]] = None
        self._cancel = threading.Event()
        self._callbacks: Dict[str, List[Callable]] = {}

    # ── Event System ──

    def on(self, event: str, callback: Callable) -> None:
        """Register an event callback. Events: log, state."""
        self._callbacks.setdefault(event, []).append(callback)

    def emit(self, event: str, **kwargs) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._callbacks.get(event, []):
            try:
                cb(**kwargs)
            except Exception as e:
                log.error("Event callback error: %s", e)

    def cancel(self) -> None:
        """Cancel a handshake in progress."""
        self._cancel.set()
        self.emit("log", msg="Operation cancelled by user", level="warning")

    def reset_cancel(self) -> None:
        self._cancel.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ── Helpers ──

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        log.debug("Session state → %s", state.name)
        self.emit("state", state=state)

    def _require(self, step: str, *states: SessionState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.name for s in states)
            raise SessionStateError(f"{step} requires state {allowed}, session is {self.state.name}")

    def _run_step(self, name: str, func: Callable, *args):
        try:
            return func(*args)
        except LoaderError as e:
            if e.step is None:
                e.step = name
            self.failed_step = name
            self._set_state(SessionState.ERROR)
            log.error("%s failed: %s", name, e)
            self.emit("log", msg=f"Unable to {name}: {e}", level="error")
            raise

    # ── Handshake ──

    def handshake(self) -> None:
        """
        Send 0x7F until the bootloader ACKs, as bounded by the retry policy.
        Raises HandshakeTimeout when the budget runs out.
        """
        policy = self.config.retry
        start = time.monotonic()
        self.sync_attempts = 0
        for attempt in range(1, policy.max_attempts + 1):
            if self.cancelled:
                raise OperationCancelled("handshake cancelled")
            self.sync_attempts = attempt
            if self.protocol.sync():
                log.info("Bootloader ACKed sync after %d attempt(s)", attempt)
                return
            self.emit("log", msg=f"Sending 0x7F to STM32, no ACK got, retry = [{attempt}]",
                      level="warning")
            if attempt == policy.max_attempts:
                break
            if policy.deadline_s is not None and time.monotonic() - start >= policy.deadline_s:
                log.warning("Handshake deadline of %.1fs reached", policy.deadline_s)
                break
            if self._cancel.wait(policy.delay_s):
                raise OperationCancelled("handshake cancelled")
        raise HandshakeTimeout(self.sync_attempts)

    # ── Steps ──

    def connect(self) -> None:
        """Open the transport and sync with the bootloader."""
        self._require("connect", SessionState.DISCONNECTED)
        if not self.transport.is_open:
            self._run_step("open serial port", self.transport.open)
        self._run_step("connect to bootloader", self.handshake)
        self._set_state(SessionState.CONNECTED)
        self.emit("log", msg="Connected to bootloader", level="info")

    def read_version(self) -> Tuple[int, int]:
        self._require("get version", SessionState.CONNECTED)
        major, minor, commands = self._run_step("get bootloader version", self.protocol.get_version)
        self.emit("log", msg=f"Found bootloader version: {major}.{minor}", level="info")
        self._run_step("check bootloader version", check_version, major, minor)
        self._version = (major, minor, commands)
        self._set_state(SessionState.VERSION_KNOWN)
        return major, minor

    def read_chip_id(self) -> DeviceIdentity:
        self._require("get chip id", SessionState.VERSION_KNOWN)
        chip_id = self._run_step("get chip ID", self.protocol.get_chip_id)
        self.emit("log", msg=f"Chip ID: {chip_id:04X} ({CHIP_NAMES.get(chip_id, 'unknown')})", level="info")
        self._run_step("check chip ID", check_chip_id, chip_id)
        major, minor, commands = self._version
        self.identity = DeviceIdentity(major, minor, chip_id, commands)
        self._set_state(SessionState.IDENTIFIED)
        return self.identity

    def identify(self) -> DeviceIdentity:
        self.read_version()
        return self.read_chip_id()

    def unprotect(self) -> None:
        self._require("write unprotect", SessionState.IDENTIFIED)
        self._run_step("execute write unprotect", self.protocol.write_unprotect)
        self.emit("log", msg="Cleared write protection.", level="info")
        # The chip resets once the option bytes are rewritten
        self._run_step("reconnect after write unprotect", self.handshake)
        self._set_state(SessionState.UNPROTECTED)

    def erase(self) -> EraseStrategy:
        self._require("erase", SessionState.UNPROTECTED)
        strategy = select_erase_strategy(self.identity.major)
        if strategy is EraseStrategy.EXTENDED:
            self.emit("log", msg="Starting Extended Erase of FLASH memory. "
                                 "This will take some time ... Please be patient ...", level="info")
            self._run_step("extended erase chip", self.protocol.extended_erase)
            self.emit("log", msg="Extended Erased FLASH memory.", level="info")
        else:
            self._run_step("erase chip", self.protocol.erase)
            self.emit("log", msg="Erased FLASH memory.", level="info")
        self.erase_strategy = strategy
        self._set_state(SessionState.ERASED)
        return strategy

    def program(self, data_source: Callable[[int], bytes], total_size: int,
                on_progress: Optional[Callable[[int], None]] = None) -> ProgramSession:
        self._require("program", SessionState.ERASED)
        programmer = FlashProgrammer(self.protocol, self.config.flash_base, self.config.chunk_size)
        self.emit("log", msg=f"Programming flash ({total_size} bytes) ...", level="info")
        self.program_session = self._run_step(
            "program FLASH memory", programmer.program, data_source, total_size, on_progress)
        self._set_state(SessionState.PROGRAMMED)
        return self.program_session

    def go(self, address: Optional[int] = None) -> None:
        self._require("go", SessionState.PROGRAMMED, SessionState.IDENTIFIED)
        address = self.config.flash_base if address is None else address
        self.emit("log", msg=f"Sending Go command (0x{address:08X}) ...", level="info")
        self._run_step("run Go command", self.protocol.go, address)
        self._set_state(SessionState.EXECUTING)

    def close(self) -> None:
        """Close the transport. The final session state is kept."""
        if self.transport.is_open:
            self.transport.flush_output()
            self.transport.close()

    def run(self, data_source: Optional[Callable[[int], bytes]] = None, total_size: int = 0,
            on_progress: Optional[Callable[[int], None]] = None) -> SessionState:
        """
        Run the whole sequence and return the final state.
        The transport is closed on the way out, success or not.
        """
        if not self.config.skip_programming and data_source is None:
            raise ValueError("a data source is required unless skip_programming is set")
        start_time = time.monotonic()
        try:
            self.connect()
            self.identify()
            if self.config.skip_programming:
                self.emit("log", msg="Skipping flashing ...", level="info")
            else:
                self.unprotect()
                self.erase()
                self.program(data_source, total_size, on_progress)
            if self.config.send_go:
                self.go()
        finally:
            self.close()
        elapsed = time.monotonic() - start_time
        log.info("Session finished in %s (%.1fs)", self.state.name, elapsed)
        return self.state


# ═══════════════════════════════════════════════════════════════════════
# SECTION 8 — FIRMWARE FILE
# ═══════════════════════════════════════════════════════════════════════

class FirmwareFile:
    """Raw .bin firmware images, written from the start of flash."""

    SKIP_MARKER = "0"

    @staticmethod
    def is_skip_marker(path) -> bool:
        """A file argument of ``0`` means 'connect and identify only'."""
        return str(path) == FirmwareFile.SKIP_MARKER

    @staticmethod
    def size(path) -> int:
        p = Path(path)
        if not p.is_file():
            raise FileNotFoundError(f"Firmware file not found: {path}")
        return p.stat().st_size

    @staticmethod
    def open(path) -> BinaryIO:
        return open(path, "rb")


# ═══════════════════════════════════════════════════════════════════════
# SECTION 9 — CLI INTERFACE
# ═══════════════════════════════════════════════════════════════════════

def cli_log_callback(msg: str, level: str = "info") -> None:
    """Print session messages to console."""
    prefix = {"info": "  ", "warning": "⚠ ", "error": "✗ ", "success": "✓ ", "debug": "  "}
    print(f"{prefix.get(level, '  ')}{msg}")

def cli_progress_callback(current: int, total: int, label: str = "") -> None:
    """Print progress to console."""
    if total > 0:
        pct = (current / total) * 100
        bar_len = 40
        filled = int(bar_len * current / total)
        bar = "█" * filled + "░" * (bar_len - filled)
        print(f"\r  {label} [{bar}] {pct:.0f}%", end="", flush=True)
        if current >= total:
            print()


def make_transport(args: argparse.Namespace) -> BaseTransport:
    if args.transport == "loopback":
        return LoopbackTransport()
    if args.transport == "d2xx":
        return D2XXTransport(args.device_index or 0, args.baud)
    return PySerialTransport(args.port, args.baud)


def run_cli(args: argparse.Namespace) -> int:
    """Run the CLI interface. Returns the process exit code."""
    print(f"\n{__app_name__} v{__version__}")
    print(f"Target: {__target__}\n")

    print(f"Port:[{args.port or ''}]")
    print(f"File:[{args.file or ''}]")
    print(f"Baud:[{args.baud}]")
    print(f"Skip:[{int(args.skip)}]")
    print(f"Go:[{int(args.go)}]")

    if not args.port and args.transport == "pyserial":
        print("✗ No UART port selected, try --help", file=sys.stderr)
        return 1

    skip = args.skip
    total_size = 0
    if not skip:
        if not args.file:
            print("✗ No bin file selected, try --help", file=sys.stderr)
            return 1
        if FirmwareFile.is_skip_marker(args.file):
            skip = True
        else:
            try:
                total_size = FirmwareFile.size(args.file)
            except OSError:
                print(f"✗ Unable to open file {args.file}", file=sys.stderr)
                return 1

    fp = None
    if not skip:
        try:
            fp = FirmwareFile.open(args.file)
        except OSError as e:
            print(f"✗ Unable to open file {args.file}: {e}", file=sys.stderr)
            return 1

    config = SessionConfig(
        baud=args.baud,
        timeout_ms=args.timeout,
        erase_timeout_ms=args.erase_timeout,
        chunk_size=args.chunk_size,
        skip_programming=skip,
        send_go=args.go,
        retry=RetryPolicy(max_attempts=args.retries, delay_s=args.retry_delay),
    )
    session = Session(make_transport(args), config)
    session.on("log", cli_log_callback)
    progress = ProgressThreshold(
        total_size, lambda pct: cli_progress_callback(pct, 100, "Programming"))

    try:
        if fp is None:
            session.run()
        else:
            with fp:
                session.run(fp.read, total_size, progress)
        if session.program_session is not None:
            print(f"  Wrote {session.program_session.bytes_written} bytes "
                  f"in {session.program_session.blocks_written} blocks")
        print("Done.")
        return 0

    except KeyboardInterrupt:
        print("\n\nCancelled by user")
        session.cancel()
        return 130
    except LoaderError as e:
        step = session.failed_step or e.step or "flash"
        print(f"\n✗ Unable to {step}: {e}", file=sys.stderr)
        log.error("Aborted during %s", step, exc_info=True)
        return 1


# ═══════════════════════════════════════════════════════════════════════
# SECTION 10 — ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stm32-flasher",
        description=f"{__app_name__} v{__version__} — flash STM32 parts through the ROM bootloader",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -p /dev/ttyUSB0 -f firmware.bin -g          # Flash and run
  %(prog)s -p COM3 -f firmware.bin -b 115200           # Flash at 115200 baud
  %(prog)s -p /dev/ttyUSB0 -s                          # Identify only
  %(prog)s --transport loopback -f firmware.bin        # Dry run, simulated chip
        """,
    )

    # Essential
    parser.add_argument("--port", "-p", help="UART port path, e.g. /dev/ttyUSB0 or COM3")
    parser.add_argument("--file", "-f", help="Bin file path (0 = skip flashing)")

    # Optional
    parser.add_argument("--baud", "-b", type=int, default=DEFAULT_BAUD,
                        help=f"UART baud rate (default: {DEFAULT_BAUD})")
    parser.add_argument("--skip", "-s", action="store_true",
                        help="Skip flash operation, only show device info")
    parser.add_argument("--go", "-g", action="store_true",
                        help="Send Go command after flashing to run the user program")

    # Advanced
    parser.add_argument("--transport", choices=["pyserial", "d2xx", "loopback"],
                        default="pyserial", help="Transport type (loopback = simulated bootloader)")
    parser.add_argument("--device-index", type=int, help="FTDI device index (for D2XX)")
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT_MS,
                        help=f"Response timeout in ms (default: {DEFAULT_TIMEOUT_MS})")
    parser.add_argument("--erase-timeout", type=int, default=ERASE_TIMEOUT_MS,
                        help=f"Erase/unprotect timeout in ms (default: {ERASE_TIMEOUT_MS})")
    parser.add_argument("--retries", type=int, default=DEFAULT_SYNC_ATTEMPTS,
                        help=f"Sync attempts before giving up (default: {DEFAULT_SYNC_ATTEMPTS})")
    parser.add_argument("--retry-delay", type=float, default=DEFAULT_SYNC_DELAY_S,
                        help=f"Seconds between sync attempts (default: {DEFAULT_SYNC_DELAY_S})")
    parser.add_argument("--chunk-size", type=int, default=MAX_WRITE_BLOCK,
                        help=f"Bytes per Write Memory block, 1-{MAX_WRITE_BLOCK} (default: {MAX_WRITE_BLOCK})")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files (default: logs/)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output on the console")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not 1 <= args.chunk_size <= MAX_WRITE_BLOCK:
        parser.error(f"--chunk-size must be between 1 and {MAX_WRITE_BLOCK}")
    setup_logging(
        console_level=logging.DEBUG if args.verbose else logging.WARNING,
        log_dir=args.log_dir,
    )
    return run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
