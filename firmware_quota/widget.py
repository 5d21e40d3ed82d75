"""Translucent desktop widget showing Firmware API quota usage."""

import logging
import sys
import time

from PySide6.QtCore import QPoint, QThread, QTimer, Qt, Signal
from PySide6.QtGui import QAction, QActionGroup, QColor, QFont, QPainter, QPainterPath, QPen
from PySide6.QtWidgets import (
    QApplication,
    QHBoxLayout,
    QInputDialog,
    QLabel,
    QLineEdit,
    QMenu,
    QVBoxLayout,
    QWidget,
)

from .client import QuotaClient
from .config import (
    CONFIG_DIR,
    WIDGET_DEFAULT_INTERVAL_S,
    WIDGET_INTERVAL_CHOICES,
    WIDGET_MIN_INTERVAL_S,
    delete_api_key_file,
    load_api_key,
    load_settings,
    save_api_key,
    setup_logging,
)
from .engine import EngineView, FetchJob, FetchOutcome, RefreshEngine
from .eventlog import QuotaLog
from .parser import QUOTA_WINDOW_S
from .timeutil import format_duration_compact, format_duration_tight, truncate_for_display

lib_logger = logging.getLogger("firmware_quota")

COUNTDOWN_INTERVAL_MS = 1000  # 1 second
WORKER_SHUTDOWN_WAIT_MS = 20 * 1000
TOOLTIP_ERROR_LEN = 120


class FetchWorker(QThread):
    finished = Signal(object)

    def __init__(self, engine: RefreshEngine, job: FetchJob):
        super().__init__()
        self.engine = engine
        self.job = job

    def run(self):
        outcome = self.engine.perform(self.job)
        self.finished.emit(outcome)


# ---------------------------------------------------------------------------
# UI helpers
# ---------------------------------------------------------------------------

def _bar_color(pct: float) -> QColor:
    if pct >= 80:
        return QColor(232, 72, 97)  # red
    if pct >= 50:
        return QColor(242, 191, 51)  # yellow
    return QColor(51, 199, 77)  # green


class UsageBar(QWidget):
    """Single bar with label, fill, right-aligned value and detail text."""

    def __init__(self, label: str, parent=None):
        super().__init__(parent)
        self._label = label
        self._pct: float | None = None
        self._color_pct = 0.0
        self._value_text = "--"
        self._detail_text = ""
        self._dimmed = False
        self.setFixedHeight(44)

    def set_data(self, pct: float | None, value_text: str, detail_text: str = "",
                 color_pct: float | None = None, dimmed: bool = False):
        self._pct = pct
        self._value_text = value_text
        self._detail_text = detail_text
        self._color_pct = pct if color_pct is None else color_pct
        self._dimmed = dimmed
        self.update()

    def paintEvent(self, event):
        p = QPainter(self)
        p.setRenderHint(QPainter.RenderHint.Antialiasing)
        w = self.width()

        label_font = QFont("sans-serif", 9)
        label_font.setWeight(QFont.Weight.Medium)
        p.setFont(label_font)
        p.setPen(QColor(160, 160, 180))
        p.drawText(0, 14, self._label)

        fm = p.fontMetrics()
        detail_w = fm.horizontalAdvance(self._detail_text)
        p.setPen(QColor(120, 120, 140))
        p.drawText(w - detail_w, 14, self._detail_text)

        value_w = fm.horizontalAdvance(self._value_text)
        p.setPen(QColor(200, 200, 220))
        p.drawText(w - detail_w - value_w - (12 if detail_w else 0), 14, self._value_text)

        bar_y = 22
        bar_h = 10
        bar_radius = 5
        bg_path = QPainterPath()
        bg_path.addRoundedRect(0, bar_y, w, bar_h, bar_radius, bar_radius)
        p.fillPath(bg_path, QColor(40, 40, 55))

        if self._pct is not None:
            pct = max(0.0, min(100.0, self._pct))
            fill_w = max(bar_h, w * pct / 100) if pct > 0 else 0
            if fill_w:
                color = _bar_color(self._color_pct)
                if self._dimmed:
                    color.setAlpha(110)
                fill_path = QPainterPath()
                fill_path.addRoundedRect(0, bar_y, fill_w, bar_h, bar_radius, bar_radius)
                p.fillPath(fill_path, color)

        p.end()


def build_tooltip(view: EngineView, now: float | None = None) -> str:
    """Detail text for the hover tooltip."""
    if now is None:
        now = time.time()
    next_in = view.seconds_until_next_attempt
    next_line = f"Next refresh: {next_in}s" if next_in is not None else "Next refresh: --"
    lines = ["Firmware Quota", f"Status: {view.status}"]

    snap = view.snapshot
    if snap is not None:
        lines.append(f"Usage: {snap.percentage:.1f}%")
        lines.append(f"Delta: {view.delta_pp:+.1f}pp" if view.delta_pp is not None else "Delta: --")
        if view.last_success_age is not None:
            lines.append(f"Last OK: {format_duration_compact(view.last_success_age)} ago")
        remaining = snap.seconds_until_reset(now)
        lines.append(f"Reset: {format_duration_compact(remaining)}" if remaining is not None else "Reset: N/A")
        if view.recent_deltas:
            deltas = ", ".join(f"{d.delta_pp:+.1f}" for d in view.recent_deltas)
            lines.append(f"Recent deltas (old->new): {deltas} pp")
        if view.window_reset_age is not None:
            lines.append(f"Window reset: {format_duration_compact(view.window_reset_age)} ago")

    if view.last_error:
        lines.append(f"Failures: {view.consecutive_failures}")
        if view.last_failure_age is not None:
            lines.append(f"Last failure: {format_duration_compact(view.last_failure_age)} ago")
        lines.append(f"Last error: {truncate_for_display(view.last_error, TOOLTIP_ERROR_LEN)}")
        if view.last_http_status:
            lines.append(f"HTTP: {view.last_http_status}")
        if view.last_transport_error:
            lines.append(f"Transport: {view.last_transport_error}")

    lines.append(next_line)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Main widget
# ---------------------------------------------------------------------------

class QuotaWidget(QWidget):
    """Translucent always-on-top widget displaying Firmware quota usage."""

    def __init__(self, engine: RefreshEngine, log: QuotaLog | None = None):
        super().__init__()
        self.setWindowFlags(
            Qt.WindowType.FramelessWindowHint
            | Qt.WindowType.WindowStaysOnTopHint
            | Qt.WindowType.Tool
        )
        self.setAttribute(Qt.WidgetAttribute.WA_TranslucentBackground)
        self.setFixedWidth(300)

        self._drag_pos = QPoint()
        self._engine = engine
        self._worker: FetchWorker | None = None
        if log is not None:
            self._engine.add_listener(log)

        self._build_ui()
        self._setup_timers()
        self._fetch_usage()

    def _build_ui(self):
        layout = QVBoxLayout(self)
        layout.setContentsMargins(20, 16, 20, 12)
        layout.setSpacing(4)

        header = QHBoxLayout()
        title = QLabel("FIRMWARE QUOTA")
        title_font = QFont("sans-serif", 12)
        title_font.setWeight(QFont.Weight.Bold)
        title_font.setLetterSpacing(QFont.SpacingType.AbsoluteSpacing, 1.5)
        title.setFont(title_font)
        title.setStyleSheet("color: #03a9f4;")
        header.addWidget(title)
        header.addStretch()

        close_btn = QLabel("✕")
        close_btn.setStyleSheet("color: #666680; font-size: 14px; padding: 2px 6px;")
        close_btn.setCursor(Qt.CursorShape.PointingHandCursor)
        close_btn.mousePressEvent = lambda _: self.close()
        header.addWidget(close_btn)
        layout.addLayout(header)

        sep = QWidget()
        sep.setFixedHeight(1)
        sep.setStyleSheet("background-color: rgba(100, 100, 120, 80);")
        layout.addWidget(sep)
        layout.addSpacing(4)

        self._usage_bar = UsageBar("Usage")
        layout.addWidget(self._usage_bar)
        self._reset_bar = UsageBar("5-Hour Window")
        layout.addWidget(self._reset_bar)

        self._delta_label = QLabel("")
        self._delta_label.setStyleSheet("color: #888898; font-size: 10px; padding-left: 2px;")
        self._delta_label.setFixedHeight(16)
        layout.addWidget(self._delta_label)

        sep2 = QWidget()
        sep2.setFixedHeight(1)
        sep2.setStyleSheet("background-color: rgba(100, 100, 120, 80);")
        layout.addWidget(sep2)

        status_layout = QHBoxLayout()
        self._status_label = QLabel("Fetching...")
        self._status_label.setStyleSheet("color: #666680; font-size: 10px;")
        status_layout.addWidget(self._status_label)
        status_layout.addStretch()

        refresh_btn = QLabel("⟳")
        refresh_btn.setStyleSheet("color: #666680; font-size: 16px; padding: 0 4px;")
        refresh_btn.setCursor(Qt.CursorShape.PointingHandCursor)
        refresh_btn.mousePressEvent = lambda _: self._fetch_usage()
        status_layout.addWidget(refresh_btn)
        layout.addLayout(status_layout)

    def _setup_timers(self):
        self._fetch_timer = QTimer(self)
        self._fetch_timer.timeout.connect(self._on_fetch_timer)
        self._fetch_timer.start(self._engine.refresh_interval * 1000)
        self._engine.schedule_next()

        # Countdown timer: redraws derived text only, never fetches
        self._countdown_timer = QTimer(self)
        self._countdown_timer.timeout.connect(self._update_display)
        self._countdown_timer.start(COUNTDOWN_INTERVAL_MS)

    def _on_fetch_timer(self):
        self._engine.schedule_next()
        self._fetch_usage()

    def _fetch_usage(self):
        if self._worker and self._worker.isRunning():
            return
        job = self._engine.begin()
        if job is None:
            return
        self._worker = FetchWorker(self._engine, job)
        self._worker.finished.connect(self._on_usage_fetched)
        self._worker.start()
        self._update_display()

    def _on_usage_fetched(self, outcome: FetchOutcome):
        self._engine.complete(outcome)
        self._update_display()

    def _update_display(self):
        if self._engine.torn_down:
            return
        view = self._engine.view()
        now = time.time()
        snap = view.snapshot

        if snap is None:
            self._usage_bar.set_data(None, "no data")
            self._reset_bar.set_data(None, "--")
            self._delta_label.setText("")
        else:
            stale = " (stale)" if view.is_stale else ""
            self._usage_bar.set_data(
                snap.percentage, f"{snap.percentage:.1f}%{stale}", dimmed=view.is_stale
            )
            remaining = snap.seconds_until_reset(now)
            if remaining is None:
                self._reset_bar.set_data(None, "N/A")
            else:
                remaining_pct = min(remaining, QUOTA_WINDOW_S) * 100.0 / QUOTA_WINDOW_S
                self._reset_bar.set_data(
                    remaining_pct,
                    format_duration_tight(remaining),
                    "left of 5h",
                    color_pct=100.0 - remaining_pct,
                )
            if view.delta_pp is not None:
                self._delta_label.setText(f"Δ {view.delta_pp:+.1f}pp since last refresh")

        next_in = view.seconds_until_next_attempt
        next_text = f"Next: {next_in}s" if next_in is not None else ""
        if view.fetching:
            self._status_label.setText("Fetching...")
            self._status_label.setStyleSheet("color: #666680; font-size: 10px;")
        elif view.last_error:
            self._status_label.setText(truncate_for_display(view.last_error, 36))
            self._status_label.setStyleSheet("color: #ef4444; font-size: 10px;")
        else:
            age = format_duration_compact(view.last_success_age or 0)
            self._status_label.setText(f"Updated: {age} ago  ·  {next_text}")
            self._status_label.setStyleSheet("color: #666680; font-size: 10px;")

        self.setToolTip(build_tooltip(view, now))

    # -- context menu -------------------------------------------------------

    def contextMenuEvent(self, event):
        menu = QMenu(self)
        menu.addAction("Refresh Now", self._fetch_usage)

        interval_menu = menu.addMenu("Refresh Interval")
        group = QActionGroup(interval_menu)
        for seconds in WIDGET_INTERVAL_CHOICES:
            action = QAction(f"{seconds}s", interval_menu, checkable=True)
            action.setChecked(seconds == self._engine.refresh_interval)
            action.triggered.connect(lambda _=False, s=seconds: self._change_refresh_rate(s))
            group.addAction(action)
            interval_menu.addAction(action)

        key_menu = menu.addMenu("API Key")
        key_menu.addAction("Set...", self._set_api_key)
        key_menu.addAction("Reload", self._reload_api_key)
        key_menu.addAction("Clear Stored Key", self._clear_api_key)

        menu.addSeparator()
        menu.addAction("Quit", self.close)
        menu.exec(event.globalPos())

    def _change_refresh_rate(self, seconds: int):
        seconds = self._engine.set_refresh_interval(seconds, WIDGET_MIN_INTERVAL_S)
        self._fetch_timer.start(seconds * 1000)
        self._update_display()

    def _set_api_key(self):
        key, ok = QInputDialog.getText(
            self,
            "Firmware API Key",
            "Enter your Firmware API key (stored in ~/.config/firmware-quota/env with mode 600).",
            QLineEdit.EchoMode.Password,
        )
        key = key.strip()
        if not ok or not key:
            return
        if not save_api_key(key):
            lib_logger.warning("API key not persisted, using it for this session only")
        self._engine.set_api_key(key)
        self._fetch_usage()

    def _reload_api_key(self):
        self._engine.reload_api_key(load_api_key)
        self._fetch_usage()

    def _clear_api_key(self):
        delete_api_key_file()
        self._engine.clear_api_key()
        self._update_display()

    # -- window chrome -------------------------------------------------------

    def paintEvent(self, event):
        p = QPainter(self)
        p.setRenderHint(QPainter.RenderHint.Antialiasing)

        path = QPainterPath()
        path.addRoundedRect(0, 0, self.width(), self.height(), 16, 16)
        p.fillPath(path, QColor(20, 20, 30, 200))

        p.setPen(QPen(QColor(80, 80, 100, 60), 1))
        p.drawPath(path)

        p.end()

    def mousePressEvent(self, event):
        if event.button() == Qt.MouseButton.LeftButton:
            self._drag_pos = event.globalPosition().toPoint() - self.frameGeometry().topLeft()
            event.accept()

    def mouseMoveEvent(self, event):
        if event.buttons() & Qt.MouseButton.LeftButton:
            self.move(event.globalPosition().toPoint() - self._drag_pos)
            event.accept()

    def closeEvent(self, event):
        self._engine.teardown()
        self._fetch_timer.stop()
        self._countdown_timer.stop()
        if self._worker and self._worker.isRunning():
            # No mid-flight cancel; the request finishes or hits its timeout
            self._worker.wait(WORKER_SHUTDOWN_WAIT_MS)
        self._engine.close()
        super().closeEvent(event)


def main():
    setup_logging("--verbose" in sys.argv)
    app = QApplication(sys.argv)
    app.setApplicationName("Firmware Quota")

    settings = load_settings(
        minimum_interval=WIDGET_MIN_INTERVAL_S,
        default_interval=WIDGET_DEFAULT_INTERVAL_S,
        log_file=str(CONFIG_DIR / "quota_log.csv"),
    )
    engine = RefreshEngine(
        QuotaClient(settings.quota_url, settings.request_timeout),
        api_key=settings.api_key,
        refresh_interval=settings.refresh_interval,
    )
    widget = QuotaWidget(engine, QuotaLog(settings.log_file))
    widget.show()

    screen = app.primaryScreen().geometry()
    widget.move(screen.width() - widget.width() - 20, 40)

    sys.exit(app.exec())


if __name__ == "__main__":
    main()
