#!/usr/bin/env python3
"""
Leave Time Tracker - System Tray Application
============================================

Persistent system tray icon that:
- Shows the time left until you may leave ('2h', '45m') as the icon
- Keeps start, leave and remaining time in the tooltip
- Reminds you once when the remaining time drops below the threshold
- Looks up today's entrance time from the SSRS report on request

Cross-platform: Windows + macOS

Usage:
    pythonw.exe tray_app.py              # Windows: run without console
    python3 tray_app.py                  # Mac: run the tray app
    python tray_app.py --start 08:15     # Count down from a given start
    python tray_app.py --no-fetch        # Skip the startup report lookup
"""

import sys
import os
import argparse
import threading
import subprocess
import logging
import webbrowser
from datetime import datetime
from pathlib import Path
from typing import Optional

# Conditional imports -- tray app degrades gracefully if missing.
# pystray picks its backend at import time and can fail without a display.
try:
    import pystray
    PYSTRAY_OK = True
except Exception:
    PYSTRAY_OK = False

try:
    from winotify import Notification, audio
    WINOTIFY_OK = True
except ImportError:
    WINOTIFY_OK = False

from leave_automation import (
    CONFIG_FILE, LOG_FILE, ConfigManager, CountdownEngine,
    ReportClient, ReportConnectionConfig, ReportServerError,
    compute_leave_time, format_duration, normalize_clock_time,
    shift_settings
)
from indicator import IndicatorRenderer

SCRIPT_DIR = Path(__file__).parent
LOCK_FILE = SCRIPT_DIR / '.tray_app.lock'
APP_ID = 'Leave Time'

# Tray app logger (separate from leave_automation logger)
tray_logger = logging.getLogger('tray_app')
tray_logger.setLevel(logging.INFO)
_handler = logging.FileHandler(LOG_FILE, encoding='utf-8')
_handler.setFormatter(
    logging.Formatter('%(asctime)s - TRAY - %(levelname)s - %(message)s')
)
tray_logger.addHandler(_handler)
tray_logger.propagate = False


def acquire_instance_lock(lock_path: Path = LOCK_FILE):
    """
    Take an exclusive, non-blocking lock on lock_path.

    Returns:
        The open lock file (keep it for the process lifetime), or None
        when another tray app already holds the lock.
    """
    lock_file = open(lock_path, 'a+')
    try:
        if sys.platform == 'win32':
            import msvcrt
            lock_file.seek(0)
            msvcrt.locking(lock_file.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        lock_file.close()
        tray_logger.info(f"Tray app already running ({lock_path.name} held)")
        return None
    return lock_file


def desktop_notify(title: str, body: str, reminder: bool = False,
                   link: Optional[str] = None):
    """
    Show a desktop notification.

    Leave reminders stay up longer and play the reminder sound; status
    messages are short. link adds an 'Open Report' button on
    Windows.
    """
    if sys.platform == 'win32':
        if not WINOTIFY_OK:
            tray_logger.warning(f"winotify missing, not shown: {title}")
            return
        try:
            toast = Notification(
                app_id=APP_ID,
                title=title,
                msg=body,
                duration='long' if reminder else 'short',
            )
            if reminder:
                toast.set_audio(audio.Reminder, loop=False)
            if link:
                toast.add_actions(label='Open Report', launch=link)
            toast.show()
        except Exception as e:
            tray_logger.error(f"Toast notification failed: {e}")
    elif sys.platform == 'darwin':
        script = (
            f'display notification "{_osa_quote(body)}" '
            f'with title "{APP_ID}" subtitle "{_osa_quote(title)}"'
        )
        if reminder:
            script += ' sound name "Glass"'
        try:
            subprocess.Popen(['osascript', '-e', script])
        except OSError as e:
            tray_logger.error(f"Mac notification failed: {e}")
    else:
        tray_logger.info(f"Notification: {title} - {body}")


def _osa_quote(text: str) -> str:
    return text.replace('\\', '\\\\').replace('"', '\\"')


# ============================================================================
# TRAY APPLICATION
# ============================================================================

class TrayApp:
    """System tray host for the leave countdown."""

    def __init__(self, start: Optional[str] = None,
                 fetch_on_startup: Optional[bool] = None):
        self._icon = None
        self._config = {}
        self._config_error = None
        self._start_override = start
        self._fetch_override = fetch_on_startup
        self._fetch_lock = threading.Lock()
        self._renderer = IndicatorRenderer()
        self._engine = CountdownEngine(
            self._renderer,
            on_tooltip=self._set_tooltip,
            on_bitmap=self._set_bitmap,
            on_notify=self._on_reminder,
        )

    def _load_config(self):
        """Read config.json; the tray still runs on defaults without it."""
        try:
            self._config = ConfigManager(CONFIG_FILE, interactive=False).config
        except FileNotFoundError as e:
            self._config_error = str(e)
            tray_logger.warning(self._config_error)
        except Exception as e:
            self._config_error = f"Failed to load config: {e}"
            tray_logger.error(self._config_error, exc_info=True)

    def _settings(self) -> dict:
        return shift_settings(self._config)

    def _report_client(self) -> ReportClient:
        return ReportClient(ReportConnectionConfig.from_config(self._config))

    def _report_configured(self) -> bool:
        rs = self._config.get('report_server', {})
        return bool(rs.get('server_url') and rs.get('report_path'))

    def _viewer_url(self) -> Optional[str]:
        if not self._report_configured():
            return None
        try:
            return self._report_client().build_viewer_url()
        except ReportServerError:
            return None

    def _fetch_on_startup(self) -> bool:
        if self._fetch_override is not None:
            return self._fetch_override and self._report_configured()
        return bool(self._config.get('options', {}).get('fetch_on_startup')
                    and self._report_configured())

    def _start_countdown(self, start: str):
        """Submit a shift starting at start using the configured length."""
        settings = self._settings()
        try:
            leave = compute_leave_time(start, settings['duration_minutes'])
        except ValueError as e:
            ok, message = False, str(e)
        else:
            ok, message = self._engine.submit_shift(
                start, leave, settings['notify_before_minutes']
            )
        if not ok:
            desktop_notify('Invalid Start Time', message)
        tray_logger.info(f"Countdown from {start}: {message}")

    # --- Menu ---

    def _build_menu(self) -> 'pystray.Menu':
        """Build the right-click context menu."""
        return pystray.Menu(
            pystray.MenuItem(
                'Show Remaining',
                self._on_show_remaining,
                default=True  # activates on click/double-click
            ),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem('Set Start to Now', self._on_start_now),
            pystray.MenuItem(
                'Report Server',
                pystray.Menu(
                    pystray.MenuItem(
                        'Fetch Entrance Time', self._on_fetch,
                        enabled=lambda item: not self._fetch_lock.locked()
                    ),
                    pystray.MenuItem(
                        'Test Connection', self._on_test_connection
                    ),
                    pystray.MenuItem(
                        'Open Report', self._on_open_report
                    ),
                ),
                visible=lambda item: self._report_configured()
            ),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem('Settings', self._on_settings),
            pystray.MenuItem('Exit', self._on_exit),
        )

    def _on_show_remaining(self, icon=None, item=None):
        """Re-evaluate now and show the tooltip text as a toast."""
        self._engine.refresh()
        shift = self._engine.shift
        if shift is None:
            desktop_notify('Leave Time', 'No shift started yet.')
            return
        desktop_notify(
            f'Leave at {shift.leave}',
            f'Started {shift.start}. '
            f'{format_duration(self._engine.minutes_remaining or 0)} '
            f'remaining.'
        )

    def _on_start_now(self, icon=None, item=None):
        self._start_countdown(datetime.now().strftime('%H:%M'))

    def _on_fetch(self, icon=None, item=None) -> bool:
        """Start an entrance time lookup unless one is already running."""
        if not self._fetch_lock.acquire(blocking=False):
            desktop_notify(
                'Fetch Already Running',
                'Entrance time lookup is in progress. Please wait.'
            )
            return False
        threading.Thread(target=self._run_fetch, daemon=True).start()
        return True

    def _run_fetch(self) -> bool:
        """Fetch the entrance time and restart the countdown from it.

        The caller holds _fetch_lock; it is released here.
        """
        try:
            employee = self._config.get(
                'report_server', {}
            ).get('employee_id', '')
            result = self._report_client().fetch_entrance_time(employee)
            if not result.success:
                desktop_notify('Entrance Time Not Found', result.reason,
                               link=self._viewer_url())
                return False
            self._start_countdown(result.time)
            shift = self._engine.shift
            if shift is None or shift.start != result.time:
                return False
            desktop_notify(
                'Entrance Time Found',
                f'You started at {result.time}. Leave at {shift.leave}.'
            )
            return True
        finally:
            self._fetch_lock.release()

    def _on_test_connection(self, icon=None, item=None):
        def _run():
            ok, message = self._report_client().test_connection()
            desktop_notify(
                'Report Server' if ok else 'Report Server Error', message
            )
        threading.Thread(target=_run, daemon=True).start()

    def _on_open_report(self, icon=None, item=None):
        """Open the attendance report in the default browser."""
        try:
            webbrowser.open(self._report_client().build_viewer_url())
        except ReportServerError as e:
            desktop_notify('Report Server', str(e))

    def _on_settings(self, icon=None, item=None):
        """Open config.json in the default editor."""
        if not CONFIG_FILE.exists():
            desktop_notify(
                'No Config',
                'config.json not found. Run setup first: '
                'python leave_automation.py --setup'
            )
            return
        if sys.platform == 'win32':
            os.startfile(str(CONFIG_FILE))
        else:
            opener = 'open' if sys.platform == 'darwin' else 'xdg-open'
            subprocess.Popen([opener, str(CONFIG_FILE)])

    def _on_exit(self, icon=None, item=None):
        """Stop the countdown and the icon."""
        tray_logger.info("Tray app exiting")
        self._engine.stop()
        if self._icon:
            self._icon.stop()

    # --- Engine callbacks ---

    def _set_bitmap(self, image):
        if self._icon:
            self._icon.icon = image

    def _set_tooltip(self, text: str):
        if self._icon:
            # Windows limits tray tooltips to 127 characters
            self._icon.title = text[:127]

    def _on_reminder(self, title: str, body: str):
        desktop_notify(title, body, reminder=True)

    # --- Startup ---

    def _on_icon_ready(self, icon):
        """pystray setup callback: show the icon and start counting."""
        icon.visible = True
        if self._config_error:
            desktop_notify('Leave Time', self._config_error)

        started = False
        if (self._start_override is None and self._fetch_on_startup()
                and self._fetch_lock.acquire(blocking=False)):
            started = self._run_fetch()
        if not started:
            start = (self._start_override or self._settings()['start']
                     or datetime.now().strftime('%H:%M'))
            self._start_countdown(start)

    def run(self):
        """Main entry point -- blocks on pystray message pump."""
        if not PYSTRAY_OK:
            print(
                "ERROR: pystray and Pillow are required.\n"
                "Install with: pip install pystray Pillow"
            )
            sys.exit(1)

        self._instance_lock = acquire_instance_lock()
        if self._instance_lock is None:
            print("Another instance of Leave Time is already running.")
            sys.exit(0)

        self._load_config()

        self._icon = pystray.Icon(
            name='LeaveTime',
            icon=self._renderer.placeholder(),
            title='Leave Time',
            menu=self._build_menu()
        )

        tray_logger.info("Tray app started")
        self._icon.run(setup=self._on_icon_ready)  # Blocks


# ============================================================================
# ENTRY POINT
# ============================================================================

def _clock_arg(value: str) -> str:
    try:
        return normalize_clock_time(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def main(argv=None):
    """Entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        description='Leave Time - System Tray App'
    )
    parser.add_argument(
        '--start', type=_clock_arg, metavar='HH:MM',
        help='Count down from this start time instead of the configured one'
    )
    parser.add_argument(
        '--no-fetch', action='store_true',
        help='Do not look up the entrance time on startup'
    )
    args = parser.parse_args(argv)

    app = TrayApp(
        start=args.start,
        fetch_on_startup=False if args.no_fetch else None,
    )
    app.run()


if __name__ == '__main__':
    main()
