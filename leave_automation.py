#!/usr/bin/env python3
"""
Leave Time Tracker
==================

Works out when you may leave for the day and keeps the remaining time live.

Features:
- Leave time from a start time and a fixed shift duration
- Countdown engine that refreshes the tray indicator every minute
- One-shot reminder when the remaining time drops below a threshold
- Entrance time lookup from an SSRS attendance report (XML, HTML or text)

Usage:
    python leave_automation.py --leave 08:15       # Leave time for a start time
    python leave_automation.py --fetch             # Entrance time from SSRS
    python leave_automation.py --test-connection   # Check the report server
    python leave_automation.py --setup             # Run setup wizard again

Version: 1.0.0
"""

import os
import sys
import io
import json
import logging
import argparse
import threading
import re
import html
import socket
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, date
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import quote, urlencode

import requests


class DualWriter:
    """Writes to both the console (original stdout) and an external log file."""

    def __init__(self, console, logfile_path: str):
        self.console = console
        self.logfile = open(logfile_path, 'a', encoding='utf-8')

    def write(self, text):
        self.console.write(text)
        self.logfile.write(text)
        self.logfile.flush()

    def flush(self):
        self.console.flush()
        self.logfile.flush()

    def close(self):
        self.logfile.close()


def _force_utf8_console():
    """Avoid UnicodeEncodeError on Windows consoles and pythonw.exe."""
    if sys.stdout is None:
        sys.stdout = open(os.devnull, 'w', encoding='utf-8')
    elif (sys.stdout.encoding or '').lower() != 'utf-8':
        sys.stdout = io.TextIOWrapper(
            sys.stdout.buffer, encoding='utf-8', errors='replace'
        )
    if sys.stderr is None:
        sys.stderr = open(os.devnull, 'w', encoding='utf-8')


# ============================================================================
# CONFIGURATION
# ============================================================================

SCRIPT_DIR = Path(__file__).parent
CONFIG_FILE = SCRIPT_DIR / "config.json"
LOG_FILE = SCRIPT_DIR / "leave_automation.log"

DEFAULT_SHIFT_MINUTES = 480
DEFAULT_NOTIFY_BEFORE = 10
TICK_SECONDS = 60
FETCH_TIMEOUT = 30
CONNECTION_TEST_TIMEOUT = 10

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE, encoding='utf-8'),
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)


# ============================================================================
# CREDENTIAL MANAGER (DPAPI encryption for Windows)
# ============================================================================

class CredentialManager:
    """Encrypt/decrypt the report server password with Windows DPAPI.

    Encrypted values are stored as 'ENC:<base64>' in config.json and can
    only be decrypted by the same Windows user on the same machine.
    Plain-text values pass through unchanged, and so does everything on
    other platforms.
    """

    PREFIX = "ENC:"

    @staticmethod
    def _dpapi(data: bytes, protect: bool) -> Optional[bytes]:
        """Run CryptProtectData/CryptUnprotectData over raw bytes."""
        import ctypes
        import ctypes.wintypes as wt

        class BLOB(ctypes.Structure):
            _fields_ = [
                ("cbData", wt.DWORD),
                ("pbData", ctypes.POINTER(ctypes.c_byte)),
            ]

        inp = BLOB()
        inp.cbData = len(data)
        inp.pbData = (ctypes.c_byte * len(data))(*data)
        out = BLOB()

        crypt32 = ctypes.windll.crypt32
        func = (crypt32.CryptProtectData if protect
                else crypt32.CryptUnprotectData)
        if not func(ctypes.byref(inp), None, None, None, None,
                    0, ctypes.byref(out)):
            return None
        result = ctypes.string_at(out.pbData, out.cbData)
        ctypes.windll.kernel32.LocalFree(out.pbData)
        return result

    @staticmethod
    def encrypt(plain_text: str) -> str:
        """Return 'ENC:<base64>' on Windows, the input unchanged otherwise."""
        if not plain_text or sys.platform != 'win32':
            return plain_text
        try:
            import base64
            enc = CredentialManager._dpapi(
                plain_text.encode('utf-8'), protect=True
            )
            if enc is None:
                return plain_text
            return (
                f"{CredentialManager.PREFIX}"
                f"{base64.b64encode(enc).decode('ascii')}"
            )
        except Exception as e:
            logger.warning(f"DPAPI encrypt failed: {e}")
            return plain_text

    @staticmethod
    def decrypt(value: str) -> str:
        """Decrypt an 'ENC:' value; anything else is returned as-is."""
        if not value or not value.startswith(CredentialManager.PREFIX):
            return value
        if sys.platform != 'win32':
            logger.warning("Cannot decrypt DPAPI value on non-Windows")
            return value
        try:
            import base64
            raw = base64.b64decode(value[len(CredentialManager.PREFIX):])
            dec = CredentialManager._dpapi(raw, protect=False)
            return dec.decode('utf-8') if dec is not None else value
        except Exception as e:
            logger.warning(f"DPAPI decrypt failed: {e}")
            return value


# ============================================================================
# CONFIGURATION MANAGER
# ============================================================================

class ConfigManager:
    """Loads and saves config.json (shift + report server settings)."""

    def __init__(self, config_path: Path = CONFIG_FILE,
                 interactive: bool = True, force_setup: bool = False):
        self.config_path = config_path
        self.interactive = interactive or force_setup
        self.config = (self.setup_wizard() if force_setup
                       else self.load_config())

    @classmethod
    def run_setup(cls, config_path: Path = CONFIG_FILE) -> 'ConfigManager':
        """Run the setup wizard even when a config file already exists."""
        return cls(config_path, force_setup=True)

    def load_config(self) -> Dict:
        """Load configuration from file, running setup if it is missing."""
        if not self.config_path.exists():
            if not self.interactive:
                raise FileNotFoundError(
                    f"{self.config_path.name} not found. Run setup first: "
                    "python leave_automation.py --setup"
                )
            logger.info("No configuration found. Starting setup wizard...")
            return self.setup_wizard()

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config = json.load(f)
            logger.info("Configuration loaded successfully")
            return config
        except Exception as e:
            logger.error(f"Error loading configuration: {e}")
            raise

    def setup_wizard(self) -> Dict:
        """Interactive setup wizard for first-time configuration."""
        print("\n" + "=" * 60)
        print("LEAVE TIME TRACKER - SETUP")
        print("=" * 60)

        print("\n--- SHIFT ---")
        start = self._ask_clock_time(
            "Usual start time HH:MM (Enter to use the time you launch): "
        )
        duration = int(
            input(
                f"Shift length in minutes (default "
                f"{DEFAULT_SHIFT_MINUTES}): "
            ).strip() or DEFAULT_SHIFT_MINUTES
        )
        notify_before = int(
            input(
                f"Remind me this many minutes before leaving, 0 to "
                f"disable (default {DEFAULT_NOTIFY_BEFORE}): "
            ).strip() or DEFAULT_NOTIFY_BEFORE
        )

        print("\n--- REPORT SERVER (OPTIONAL) ---")
        print("[INFO] Leave the server URL empty to skip entrance time lookup")
        server_url = input(
            "Report server URL (e.g. http://reports.corp.local): "
        ).strip().rstrip('/')
        report_path = ''
        username = ''
        password = ''
        domain = ''
        employee_id = ''
        if server_url:
            report_path = input(
                "Report path (e.g. /HR/Attendance): "
            ).strip()
            employee_id = input("Employee ID (optional): ").strip()
            domain = input("Windows domain (optional): ").strip()
            username = input("Username (optional): ").strip()
            if username:
                password = CredentialManager.encrypt(
                    input("Password: ").strip()
                )
                print("[OK] Password saved")

        config = {
            "shift": {
                "start": start,
                "duration_minutes": duration,
                "notify_before_minutes": notify_before
            },
            "report_server": {
                "server_url": server_url,
                "report_path": report_path,
                "username": username,
                "password": password,
                "domain": domain,
                "use_integrated_auth": True,
                "employee_id": employee_id
            },
            "options": {
                "fetch_on_startup": bool(server_url)
            }
        }

        self.save_config(config)

        print("\n" + "=" * 60)
        print("[OK] SETUP COMPLETE!")
        print("=" * 60)
        print(f"\nConfiguration saved to: {self.config_path}\n")
        return config

    def _ask_clock_time(self, prompt: str) -> str:
        """Prompt until an empty answer or a valid HH:MM is entered."""
        while True:
            raw = input(prompt).strip()
            if not raw:
                return ''
            try:
                return normalize_clock_time(raw)
            except ValueError as e:
                print(f"[!] {e}")

    def save_config(self, config: Dict):
        """Save configuration to file."""
        try:
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(config, f, indent=2)
            logger.info("Configuration saved successfully")
        except Exception as e:
            logger.error(f"Error saving configuration: {e}")
            raise


# ============================================================================
# TIME MATH
# ============================================================================

_CLOCK_RE = re.compile(r'^\s*(\d{1,2}):(\d{2})\s*$')


def parse_clock_time(value: str) -> Tuple[int, int]:
    """
    Parse 'H:MM' or 'HH:MM' into (hour, minute).

    Raises:
        ValueError: malformed value or hour/minute out of range
    """
    match = _CLOCK_RE.match(value or '')
    if not match:
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Time out of range: '{value}'")
    return hour, minute


def normalize_clock_time(value: str) -> str:
    """Return value as zero-padded 'HH:MM'."""
    hour, minute = parse_clock_time(value)
    return f"{hour:02d}:{minute:02d}"


def minutes_until(target: str, now: Optional[datetime] = None) -> int:
    """
    Whole minutes from now until target today, never negative.

    The target always refers to today; a time that has already passed
    gives 0 rather than rolling over to tomorrow.
    """
    hour, minute = parse_clock_time(target)
    now = now or datetime.now()
    target_dt = now.replace(hour=hour, minute=minute, second=0,
                            microsecond=0)
    minutes = round((target_dt - now).total_seconds() / 60)
    return max(0, minutes)


def format_duration(minutes: int) -> str:
    """Format minutes as '2h 5m', '45m' or '0m'."""
    if minutes <= 0:
        return "0m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if hours > 0 else f"{mins}m"


def format_duration_short(minutes: int) -> str:
    """Format minutes for the tray glyph: '2h' or '45m'."""
    hours, mins = divmod(max(0, minutes), 60)
    return f"{hours}h" if hours > 0 else f"{mins}m"


def compute_leave_time(start: str, shift_minutes: int) -> str:
    """Start plus shift length as 'HH:MM', capped at 23:59 the same day."""
    hour, minute = parse_clock_time(start)
    total = min(hour * 60 + minute + max(0, shift_minutes), 23 * 60 + 59)
    return f"{total // 60:02d}:{total % 60:02d}"


# ============================================================================
# DATA MODEL
# ============================================================================

@dataclass(frozen=True)
class ShiftConfig:
    """One submitted shift. leave is the countdown target."""
    start: str
    leave: str
    notify_before_minutes: int = 0

    @classmethod
    def from_strings(cls, start: str, leave: str,
                     notify_before_minutes: int = 0) -> 'ShiftConfig':
        """Validate and normalize raw host input."""
        if int(notify_before_minutes) < 0:
            raise ValueError("Reminder minutes cannot be negative")
        return cls(
            start=normalize_clock_time(start),
            leave=normalize_clock_time(leave),
            notify_before_minutes=int(notify_before_minutes),
        )


@dataclass(frozen=True)
class ReportConnectionConfig:
    """Connection settings for the SSRS report server."""
    server_url: str = ''
    report_path: str = ''
    username: str = ''
    password: str = ''
    domain: str = ''
    use_integrated_auth: bool = True

    @classmethod
    def from_config(cls, config: Dict) -> 'ReportConnectionConfig':
        """Build from the 'report_server' section of config.json."""
        rs = config.get('report_server', {})
        return cls(
            server_url=(rs.get('server_url') or '').rstrip('/'),
            report_path=rs.get('report_path') or '',
            username=rs.get('username') or '',
            password=CredentialManager.decrypt(rs.get('password') or ''),
            domain=rs.get('domain') or '',
            use_integrated_auth=rs.get('use_integrated_auth', True),
        )


# Source kinds for a successful extraction
SOURCE_TAG = 'tag'
SOURCE_ATTRIBUTE = 'attribute'
SOURCE_XML_TEXT = 'xml_text'
SOURCE_HTML = 'html'
SOURCE_TEXT = 'text'

# Failure categories
CATEGORY_CONFIGURATION = 'configuration'
CATEGORY_TRANSPORT = 'transport'
CATEGORY_EXTRACTION = 'extraction'


@dataclass(frozen=True)
class ExtractionSuccess:
    time: str
    source_kind: str
    raw_value: str

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class ExtractionFailure:
    reason: str
    category: str = CATEGORY_EXTRACTION

    @property
    def success(self) -> bool:
        return False


ExtractionResult = Union[ExtractionSuccess, ExtractionFailure]


# ============================================================================
# TIME EXTRACTOR
# ============================================================================

CONTENT_XML = 'xml'
CONTENT_HTML = 'html'
CONTENT_TEXT = 'text'

# Field names checked in this order; the first one found wins
TIME_FIELD_NAMES = [
    'EntranceTime',
    'StartTime',
    'CheckInTime',
    'ArrivalTime',
    'TimeIn',
]

_TIME_PATTERN = re.compile(r'\b(\d{1,2}):(\d{2})\b')
# Field values may carry a date or seconds around the time
_VALUE_PATTERN = re.compile(r'(\d{1,2}):(\d{2})')


def content_kind_for(content_type: str) -> str:
    """Map an HTTP Content-Type header to xml, html or text."""
    content_type = (content_type or '').lower()
    if 'xml' in content_type:
        return CONTENT_XML
    if 'html' in content_type:
        return CONTENT_HTML
    return CONTENT_TEXT


def _local_name(name: str) -> str:
    """Strip an ElementTree '{namespace}' prefix."""
    return name.rsplit('}', 1)[-1]


class TimeExtractor:
    """
    Pulls an entrance time out of a report body.

    Strategies run in order and the first success wins:
      xml:       named field lookup, then a scan of the flattened text
      html/text: scan of the raw body
    """

    def __init__(self, field_names: Optional[List[str]] = None):
        self.field_names = field_names or TIME_FIELD_NAMES

    def extract(self, body: Union[bytes, str],
                content_kind: str) -> ExtractionResult:
        """
        Extract a normalized 'HH:MM' from body.

        Args:
            body: Response body (bytes or already-decoded text)
            content_kind: One of 'xml', 'html', 'text'

        Returns:
            ExtractionSuccess or ExtractionFailure
        """
        if content_kind == CONTENT_XML:
            return self._extract_xml(body)

        text = self._as_text(body)
        source = SOURCE_HTML if content_kind == CONTENT_HTML else SOURCE_TEXT
        return self._scan_text(text, source)

    def _extract_xml(self, body: Union[bytes, str]) -> ExtractionResult:
        if isinstance(body, str):
            body = body.encode('utf-8')
        try:
            root = ET.fromstring(body)
        except ET.ParseError as e:
            logger.warning(f"Report XML is not well-formed ({e}), "
                           "reading it leniently")
            return self._extract_loose_xml(self._as_text(body))

        for result in self._find_named_fields(root):
            if result.success:
                return result

        flattened = ' '.join(t.strip() for t in root.itertext() if t.strip())
        return self._scan_text(flattened, SOURCE_XML_TEXT)

    def _extract_loose_xml(self, text: str) -> ExtractionResult:
        """Tag lookup over markup that ElementTree rejects."""
        for field in self.field_names:
            name = re.escape(field)
            tag = re.search(
                rf'<(?:[\w.-]+:)?{name}\b[^>]*>([^<]*)', text, re.IGNORECASE
            )
            attr = re.search(
                rf'<[^>]*?\s(?:[\w.-]+:)?{name}\s*=\s*["\']([^"\']*)["\']',
                text, re.IGNORECASE
            )
            if tag and (not attr or tag.start() <= attr.start()):
                raw = html.unescape(tag.group(1)).strip()
                result = self._validate(raw, raw, SOURCE_TAG)
            elif attr:
                raw = html.unescape(attr.group(1)).strip()
                result = self._validate(raw, raw, SOURCE_ATTRIBUTE)
            else:
                continue
            if result.success:
                return result

        flattened = html.unescape(re.sub(r'<[^>]*>', ' ', text))
        return self._scan_text(flattened, SOURCE_XML_TEXT)

    def _find_named_fields(self, root: ET.Element):
        """Yield one validated result per named field, in priority order."""
        elements = list(root.iter())
        for field in self.field_names:
            wanted = field.lower()
            for element in elements:
                if _local_name(element.tag).lower() == wanted:
                    raw = ''.join(element.itertext()).strip()
                    yield self._validate(raw, raw, SOURCE_TAG)
                    break
                attr = next(
                    (v for k, v in element.attrib.items()
                     if _local_name(k).lower() == wanted),
                    None
                )
                if attr is not None:
                    yield self._validate(attr.strip(), attr.strip(),
                                         SOURCE_ATTRIBUTE)
                    break

    def _scan_text(self, text: str, source: str) -> ExtractionResult:
        match = _TIME_PATTERN.search(text)
        if not match:
            return ExtractionFailure("no time found")
        return self._validate(match.group(0), match.group(0), source)

    @staticmethod
    def _validate(candidate: str, raw: str, source: str) -> ExtractionResult:
        """Range-check the first H:MM inside candidate and zero-pad it."""
        match = _VALUE_PATTERN.search(candidate)
        if not match:
            return ExtractionFailure(f"no time found in '{raw}'")
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            return ExtractionFailure(f"invalid time '{match.group(0)}'")
        return ExtractionSuccess(
            time=f"{hour:02d}:{minute:02d}",
            source_kind=source,
            raw_value=raw,
        )

    @staticmethod
    def _as_text(body: Union[bytes, str]) -> str:
        if isinstance(body, bytes):
            return body.decode('utf-8', errors='replace')
        return body or ''


# ============================================================================
# REPORT SERVER CLIENT
# ============================================================================

class ReportServerError(Exception):
    """Report request failed before a body could be inspected."""

    def __init__(self, message: str, category: str = CATEGORY_TRANSPORT):
        super().__init__(message)
        self.category = category


def _is_name_resolution_error(exc: BaseException) -> bool:
    """Walk the requests/urllib3 wrapping chain looking for a DNS failure."""
    seen = set()
    stack = [exc]
    while stack:
        err = stack.pop()
        if err is None or id(err) in seen:
            continue
        seen.add(id(err))
        if isinstance(err, socket.gaierror):
            return True
        if type(err).__name__ == 'NameResolutionError':
            return True
        stack.extend([err.__cause__, err.__context__,
                      getattr(err, 'reason', None)])
        stack.extend(a for a in getattr(err, 'args', ())
                     if isinstance(a, BaseException))
    text = str(exc)
    return any(s in text for s in (
        'Name or service not known', 'getaddrinfo failed',
        'nodename nor servname', 'Failed to resolve'
    ))


class ReportClient:
    """Fetches the entrance time from an SSRS attendance report."""

    def __init__(self, connection: ReportConnectionConfig,
                 extractor: Optional[TimeExtractor] = None):
        self.connection = connection
        self.extractor = extractor or TimeExtractor()
        self.session = requests.Session()
        self.session.auth = self._auth()

    def _auth(self) -> Optional[Tuple[str, str]]:
        """Basic credentials as DOMAIN\\user, or None for anonymous."""
        c = self.connection
        if c.use_integrated_auth and c.username and c.password:
            user = f"{c.domain}\\{c.username}" if c.domain else c.username
            return (user, c.password)
        return None

    def _require_report(self):
        if not self.connection.server_url or not self.connection.report_path:
            raise ReportServerError(
                'Report server URL and report path must be configured',
                CATEGORY_CONFIGURATION
            )

    def _report_query(self, params: Dict[str, str]) -> str:
        path = self.connection.report_path
        if not path.startswith('/'):
            path = '/' + path
        return f"?{quote(path, safe='/')}&{urlencode(params, safe=':')}"

    def build_report_url(self, fmt: str = 'XML',
                         parameters: Optional[Dict[str, str]] = None) -> str:
        """
        Build the direct report execution URL.

        Args:
            fmt: SSRS rendering format (XML, HTML4.0, CSV, ...)
            parameters: Extra report parameters (EmployeeId, Date)

        Returns:
            Full URL with rs:Format and rs:Command=Render
        """
        self._require_report()
        params = {'rs:Format': fmt, 'rs:Command': 'Render'}
        params.update(parameters or {})
        return (f"{self.connection.server_url}/ReportServer"
                f"{self._report_query(params)}")

    def build_viewer_url(self, parameters: Optional[Dict[str, str]] = None
                         ) -> str:
        """URL of the interactive ReportViewer page for the same report."""
        self._require_report()
        params = {'rs:Format': 'HTML4.0'}
        params.update(parameters or {})
        return (f"{self.connection.server_url}/ReportServer/Pages/"
                f"ReportViewer.aspx{self._report_query(params)}")

    def _get(self, url: str, timeout: int) -> requests.Response:
        """Single GET; translate transport problems into ReportServerError."""
        try:
            response = self.session.get(url, timeout=timeout)
        except requests.exceptions.Timeout:
            raise ReportServerError(
                f"Report server did not respond within {timeout}s"
            )
        except requests.exceptions.ConnectionError as e:
            logger.warning(f"Report server connection failed: {e}")
            if _is_name_resolution_error(e):
                raise ReportServerError(
                    'Report server not found. Check the server URL.'
                )
            raise ReportServerError(
                'Cannot connect to report server. Check the server URL.'
            )
        except requests.exceptions.RequestException as e:
            raise ReportServerError(f"Request to report server failed: {e}")

        if response.status_code >= 500:
            raise ReportServerError(
                f"Report server returned error {response.status_code}"
            )
        return response

    def fetch_entrance_time(self, employee_id: Optional[str] = None,
                            target_date: Optional[str] = None
                            ) -> ExtractionResult:
        """
        Render the attendance report and pull the entrance time from it.

        Args:
            employee_id: Value for the EmployeeId report parameter
            target_date: Date (YYYY-MM-DD), defaults to today

        Returns:
            ExtractionSuccess, or ExtractionFailure whose category tells
            configuration, transport and extraction problems apart
        """
        target_date = target_date or date.today().strftime('%Y-%m-%d')
        parameters = {}
        if employee_id:
            parameters['EmployeeId'] = employee_id
        parameters['Date'] = target_date

        try:
            url = self.build_report_url('XML', parameters)
            logger.info(f"Fetching entrance time for {target_date}")
            response = self._get(url, FETCH_TIMEOUT)

            if response.status_code == 401:
                raise ReportServerError(
                    'Authentication failed. Check your credentials.'
                )
            if response.status_code == 404:
                raise ReportServerError(
                    'Report not found. Check the report path.'
                )
            if response.status_code >= 400:
                raise ReportServerError(
                    f"Report server returned error {response.status_code}"
                )
        except ReportServerError as e:
            logger.error(f"Entrance time fetch failed: {e}")
            return ExtractionFailure(str(e), e.category)

        kind = content_kind_for(response.headers.get('Content-Type', ''))
        result = self.extractor.extract(response.content, kind)
        if result.success:
            logger.info(
                f"Entrance time {result.time} "
                f"(source={result.source_kind}, raw='{result.raw_value}')"
            )
        else:
            logger.warning(f"No entrance time in {kind} report: "
                           f"{result.reason}")
        return result

    def test_connection(self) -> Tuple[bool, str]:
        """
        Check that the report server answers.

        Returns:
            (success, user-facing message)
        """
        if not self.connection.server_url:
            return False, 'Server URL is required'

        try:
            response = self._get(
                f"{self.connection.server_url}/ReportServer",
                CONNECTION_TEST_TIMEOUT
            )
        except ReportServerError as e:
            return False, str(e)

        if response.status_code == 401:
            return False, 'Authentication failed'
        if response.status_code >= 400:
            return False, f"Server returned error {response.status_code}"
        logger.info("Report server connection successful")
        return True, 'Connection successful'


# ============================================================================
# COUNTDOWN ENGINE
# ============================================================================

class CountdownEngine:
    """
    Keeps the tray indicator in step with the time left until leave.

    The host constructs one engine and passes it presentation callbacks:
    on_tooltip(text), on_bitmap(image) and on_notify(title, body).
    The renderer needs a render_label(text) method returning an image,
    or None when it is busy.
    """

    def __init__(self, renderer,
                 on_tooltip: Optional[Callable[[str], None]] = None,
                 on_bitmap: Optional[Callable[[object], None]] = None,
                 on_notify: Optional[Callable[[str, str], None]] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 interval: float = TICK_SECONDS):
        self.renderer = renderer
        self.on_tooltip = on_tooltip
        self.on_bitmap = on_bitmap
        self.on_notify = on_notify
        self.clock = clock
        self.interval = interval

        self.shift: Optional[ShiftConfig] = None
        self.armed_for_leave: Optional[str] = None
        self.already_fired = False
        self.last_display_text: Optional[str] = None
        self.minutes_remaining: Optional[int] = None

        self._state_lock = threading.Lock()
        self._eval_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0

    @property
    def state(self) -> str:
        return 'active' if self.shift is not None else 'idle'

    def submit_shift(self, start: str, leave: str,
                     notify_before_minutes: int = 0) -> Tuple[bool, str]:
        """
        Validate raw input and start (or restart) the countdown.

        Returns:
            (success, message); bad input never raises
        """
        try:
            shift = ShiftConfig.from_strings(start, leave,
                                             notify_before_minutes)
        except (ValueError, TypeError) as e:
            logger.warning(f"Rejected shift input: {e}")
            return False, str(e)
        self.submit(shift)
        return True, f"Leave at {shift.leave}"

    def submit(self, shift: ShiftConfig):
        """Replace the active shift, evaluate now and re-arm the timer."""
        # Waits for an in-flight tick so it never sees a half-reset guard.
        with self._eval_lock:
            with self._state_lock:
                if self.shift is None or self.shift.leave != shift.leave:
                    self.armed_for_leave = None
                    self.already_fired = False
                self.shift = shift
            logger.info(
                f"Shift submitted: start {shift.start}, leave {shift.leave}, "
                f"remind {shift.notify_before_minutes}m before"
            )
            self._evaluate_locked()
        self._arm_timer()

    def refresh(self) -> bool:
        """Run one evaluation cycle; False if skipped (idle or busy)."""
        return self._evaluate(blocking=False)

    def stop(self):
        """Cancel the periodic timer."""
        with self._state_lock:
            self._generation += 1
            if self._timer:
                self._timer.cancel()
                self._timer = None

    def _arm_timer(self):
        with self._state_lock:
            if self._timer:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            self._timer = threading.Timer(
                self.interval, self._on_timer, args=(generation,)
            )
            self._timer.daemon = True
            self._timer.start()

    def _on_timer(self, generation: int):
        """Timer callback: evaluate, then re-arm unless superseded."""
        if generation != self._generation:
            return
        self.refresh()
        with self._state_lock:
            if generation != self._generation:
                return
            self._timer = threading.Timer(
                self.interval, self._on_timer, args=(generation,)
            )
            self._timer.daemon = True
            self._timer.start()

    def _evaluate(self, blocking: bool) -> bool:
        if not self._eval_lock.acquire(blocking=blocking):
            logger.debug("Evaluation already in progress, skipping tick")
            return False
        try:
            return self._evaluate_locked()
        finally:
            self._eval_lock.release()

    def _evaluate_locked(self) -> bool:
        """One evaluation cycle; the caller holds _eval_lock."""
        shift = self.shift
        if shift is None:
            return False

        minutes = minutes_until(shift.leave, self.clock())
        self.minutes_remaining = minutes
        display_text = format_duration_short(minutes)

        if display_text != self.last_display_text:
            image = self.renderer.render_label(display_text)
            if image is not None:
                self._deliver(self.on_bitmap, image)
                self.last_display_text = display_text

        self._deliver(
            self.on_tooltip,
            f"Start: {shift.start}  ->  Leave: {shift.leave}\n"
            f"Remaining: {format_duration(minutes)}"
        )
        self._maybe_notify(shift, minutes)
        return True

    def _maybe_notify(self, shift: ShiftConfig, minutes: int):
        threshold = shift.notify_before_minutes
        if threshold <= 0 or minutes > threshold:
            return
        if self.already_fired and self.armed_for_leave == shift.leave:
            return

        self.already_fired = True
        self.armed_for_leave = shift.leave
        if minutes == 0:
            title, body = 'Time to Leave', f"It is {shift.leave}. You may leave now."
        else:
            title = 'Leaving Soon'
            body = (f"{format_duration(minutes)} left until your leave "
                    f"time ({shift.leave}).")
        logger.info(f"Leave reminder: {body}")
        self._deliver(self.on_notify, title, body)

    @staticmethod
    def _deliver(callback, *args):
        """Call a host callback; a failing host must not break the tick."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Indicator callback failed: {e}", exc_info=True)


# ============================================================================
# ENTRY POINT
# ============================================================================

def shift_settings(config: Dict) -> Dict:
    shift = config.get('shift', {})
    return {
        'start': shift.get('start') or '',
        'duration_minutes': int(
            shift.get('duration_minutes', DEFAULT_SHIFT_MINUTES)
        ),
        'notify_before_minutes': int(
            shift.get('notify_before_minutes', DEFAULT_NOTIFY_BEFORE)
        ),
    }


def _print_leave(start: str, duration: int):
    leave = compute_leave_time(start, duration)
    remaining = format_duration(minutes_until(leave))
    print(f"Start:     {normalize_clock_time(start)}")
    print(f"Leave:     {leave}")
    print(f"Remaining: {remaining}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Leave Time Tracker',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python leave_automation.py --leave 08:15            # Leave time for a start
  python leave_automation.py --fetch                  # Today's entrance time
  python leave_automation.py --fetch --date 2026-10-16
  python leave_automation.py --test-connection        # Check report server
  python leave_automation.py --setup                  # Run setup wizard
        """
    )
    parser.add_argument(
        '--setup', action='store_true',
        help='Run setup wizard'
    )
    parser.add_argument(
        '--leave', type=str, metavar='HH:MM',
        help='Show leave time and remaining time for this start time'
    )
    parser.add_argument(
        '--fetch', action='store_true',
        help='Fetch entrance time from the report server'
    )
    parser.add_argument(
        '--date', type=str,
        help='Report date for --fetch (YYYY-MM-DD)'
    )
    parser.add_argument(
        '--employee', type=str,
        help='Employee ID for --fetch (overrides config)'
    )
    parser.add_argument(
        '--test-connection', action='store_true',
        help='Check connectivity to the report server'
    )
    parser.add_argument(
        '--logfile', type=str,
        help='Also write output to this log file (appends)'
    )
    args = parser.parse_args()

    _force_utf8_console()
    if args.logfile:
        sys.stdout = DualWriter(sys.stdout, args.logfile)

    try:
        if args.setup:
            ConfigManager.run_setup(CONFIG_FILE)
            return

        config = ConfigManager(CONFIG_FILE).config
        settings = shift_settings(config)

        if args.leave:
            _print_leave(args.leave, settings['duration_minutes'])
            return

        client = ReportClient(ReportConnectionConfig.from_config(config))

        if args.test_connection:
            ok, message = client.test_connection()
            print(f"[{'OK' if ok else 'ERROR'}] {message}")
            if not ok:
                sys.exit(1)
            return

        if args.fetch:
            employee = args.employee or config.get(
                'report_server', {}
            ).get('employee_id', '')
            result = client.fetch_entrance_time(employee, args.date)
            if not result.success:
                print(f"[ERROR] {result.reason}")
                sys.exit(1)
            print(f"[OK] Entrance time: {result.time} "
                  f"(from {result.source_kind})")
            _print_leave(result.time, settings['duration_minutes'])
            return

        start = settings['start'] or datetime.now().strftime('%H:%M')
        _print_leave(start, settings['duration_minutes'])

    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user.")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\n[ERROR] {e}")
        print(f"See {LOG_FILE} for details")
        sys.exit(1)


if __name__ == "__main__":
    main()
