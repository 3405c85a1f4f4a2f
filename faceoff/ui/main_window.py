"""Main application window: the side-by-side comparison view."""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Set

import httpx
from PySide6.QtWidgets import (
    QMainWindow,
    QWidget,
    QHBoxLayout,
    QVBoxLayout,
    QSplitter,
    QStatusBar,
    QLabel,
    QFileDialog,
    QMessageBox,
)
from PySide6.QtCore import Qt, QTimer
from PySide6.QtGui import QShortcut, QKeySequence, QAction

from .dialogs import ApiLogsDialog, HistoryDialog, PresetDialog, SettingsDialog
from .input_panel import InputPanel
from .model_panel import ModelPanelWidget
from ..config.settings import settings, get_api_key as get_env_api_key
from ..config.models import ModelCatalog
from ..config.persistence import persistence
from ..config.themes import get_stylesheet, theme, fonts, metrics
from ..errors import FaceoffError
from ..llm.openrouter_adapter import OpenRouterAdapter
from ..orchestrator.chunk_channel import ChunkChannel
from ..orchestrator.panel_orchestrator import PanelOrchestrator
from ..orchestrator.stream_registry import StreamRegistry
from ..storage.conversation_store import ConversationStore
from ..summarization.title_generator import TitleGenerator
from ..utils.export import generate_export_filename, save_markdown_export


logger = logging.getLogger(__name__)


class ComparisonWindow(QMainWindow):
    """Main window: one prompt, several models, side by side."""

    def __init__(self) -> None:
        """Initialize the main window and wire the orchestrator."""
        super().__init__()
        self._active_tasks: Set[asyncio.Task] = set()
        self._models_loaded = False

        self._store = ConversationStore(settings.database_path)
        self._channel = ChunkChannel()
        self._catalog = ModelCatalog(persistence.get_api_key)
        self._registry = StreamRegistry(
            self._channel,
            persistence.get_api_key,
            catalog=self._catalog,
            allow_free_mode=settings.allow_free_mode,
        )
        self._orchestrator = PanelOrchestrator(
            store=self._store,
            registry=self._registry,
            channel=self._channel,
            title_adapter_factory=lambda: OpenRouterAdapter(api_key=persistence.get_api_key()),
            catalog=self._catalog,
            title_generator=TitleGenerator(),
            preferences=persistence,
            panel_count=settings.panel_count,
        )
        self._orchestrator.add_listener(self._on_panel_changed)
        self._orchestrator.add_notice_listener(self._on_notice)
        self._orchestrator.add_title_listener(self._on_title_generated)

        self._setup_ui()
        self._setup_shortcuts()
        self._orchestrator.restore_selection()

    # ==================== UI Setup ====================

    def _setup_ui(self) -> None:
        self.setWindowTitle(settings.window_title)
        self.setMinimumSize(900, 500)

        prefs = persistence.preferences
        self.move(prefs.window.x, prefs.window.y)
        self.resize(prefs.window.width, prefs.window.height)
        if prefs.window.maximized:
            self.showMaximized()

        self.setStyleSheet(get_stylesheet())
        self._setup_menu_bar()

        central_widget = QWidget()
        self.setCentralWidget(central_widget)
        layout = QVBoxLayout(central_widget)
        layout.setContentsMargins(0, 0, 0, 0)
        layout.setSpacing(0)

        # Panels side by side
        splitter = QSplitter(Qt.Orientation.Horizontal)
        splitter.setChildrenCollapsible(False)
        self.panel_widgets: List[ModelPanelWidget] = []
        for panel in self._orchestrator.panels:
            widget = ModelPanelWidget(panel.index)
            widget.model_changed.connect(self._on_model_selected)
            splitter.addWidget(widget)
            self.panel_widgets.append(widget)

        panels_container = QWidget()
        panels_layout = QHBoxLayout(panels_container)
        panels_layout.setContentsMargins(
            metrics.padding_medium,
            metrics.padding_medium,
            metrics.padding_medium,
            metrics.padding_small,
        )
        panels_layout.addWidget(splitter)
        layout.addWidget(panels_container, stretch=1)

        self.input_panel = InputPanel()
        self.input_panel.prompt_submitted.connect(self._on_prompt_submitted)
        self.input_panel.stop_requested.connect(self._on_stop_all)
        layout.addWidget(self.input_panel)

        self.status_bar = QStatusBar()
        self.setStatusBar(self.status_bar)

        self.title_label = QLabel("New comparison")
        self.title_label.setStyleSheet(f"""
            QLabel {{
                color: {theme.text_secondary};
                padding: 4px {metrics.padding_medium}px;
                font-family: {fonts.ui};
            }}
        """)
        self.status_bar.addPermanentWidget(self.title_label)

        self.mode_label = QLabel("")
        self.mode_label.setStyleSheet(f"""
            QLabel {{
                color: {theme.accent};
                padding: 4px {metrics.padding_medium}px;
                font-weight: 500;
            }}
        """)
        self.status_bar.addPermanentWidget(self.mode_label)
        self._update_mode_label()

        QTimer.singleShot(100, self.input_panel.focus_input)

    def _setup_menu_bar(self) -> None:
        menu_bar = self.menuBar()

        file_menu = menu_bar.addMenu("&File")
        self._add_action(file_menu, "New Comparison", self._on_new_comparison, "Ctrl+N")
        self._add_action(file_menu, "History...", self._on_open_history, "Ctrl+H")
        self._add_action(file_menu, "Export to Markdown...", self._on_export, "Ctrl+E")
        file_menu.addSeparator()
        self._add_action(file_menu, "Quit", self.close, "Ctrl+Q")

        models_menu = menu_bar.addMenu("&Models")
        self._add_action(models_menu, "Presets...", self._on_open_presets, "Ctrl+P")
        self._add_action(models_menu, "Refresh Model List", self._on_refresh_models)

        tools_menu = menu_bar.addMenu("&Tools")
        self._add_action(tools_menu, "API Logs...", self._on_open_api_logs, "Ctrl+L")
        self._add_action(tools_menu, "Settings...", self._on_open_settings, "Ctrl+,")

    def _add_action(self, menu, text: str, slot, shortcut: str = "") -> QAction:
        action = QAction(text, self)
        if shortcut:
            action.setShortcut(QKeySequence(shortcut))
        action.triggered.connect(slot)
        menu.addAction(action)
        return action

    def _setup_shortcuts(self) -> None:
        # Escape - Stop all streams
        stop_shortcut = QShortcut(QKeySequence("Escape"), self)
        stop_shortcut.activated.connect(self._on_stop_all)

    # ==================== Task Management ====================

    def _create_task(self, coro, name: str = "") -> asyncio.Task:
        """Create a tracked async task with error handling.

        Args:
            coro: Coroutine to run
            name: Optional task name for debugging

        Returns:
            The created task
        """
        task = asyncio.create_task(coro)
        if name:
            task.set_name(name)
        self._active_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._active_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task '%s' failed", task.get_name(), exc_info=exc)
            message = str(exc)
            if len(message) > 200:
                message = message[:200] + "..."
            self.status_bar.showMessage(f"Background error: {message}", 5000)

    # ==================== Models ====================

    def showEvent(self, event) -> None:
        super().showEvent(event)
        if not self._models_loaded:
            self._models_loaded = True
            self._create_task(self._load_models(), name="load_models")

    async def _load_models(self, force_refresh: bool = False) -> None:
        self.status_bar.showMessage("Loading models...")
        try:
            models = await self._catalog.get_models(force_refresh=force_refresh)
        except (FaceoffError, httpx.HTTPError) as e:
            logger.warning("Could not load models: %s", e)
            self.status_bar.showMessage(f"Could not load models: {e}", 8000)
            return

        for widget, panel in zip(self.panel_widgets, self._orchestrator.panels):
            widget.set_models(models, panel.model_id)
        self.status_bar.showMessage(f"{len(models)} models available", 3000)

    def _on_refresh_models(self) -> None:
        self._catalog.clear_cache()
        self._create_task(self._load_models(force_refresh=True), name="refresh_models")

    def _on_model_selected(self, panel_index: int, model_id: str) -> None:
        try:
            self._orchestrator.set_model(panel_index, model_id or None)
        except FaceoffError as e:
            self.status_bar.showMessage(str(e), 4000)

    def _update_mode_label(self) -> None:
        if persistence.get_api_key():
            self.mode_label.setText("OpenRouter")
        else:
            self.mode_label.setText("Free mode")

    # ==================== Orchestrator callbacks ====================

    def _on_panel_changed(self, panel_index: int) -> None:
        self.panel_widgets[panel_index].render_state(self._orchestrator.panels[panel_index])
        self.input_panel.set_streaming(self._orchestrator.is_any_streaming)

    def _on_notice(self, message: str) -> None:
        self.status_bar.showMessage(message, 6000)

    def _on_title_generated(self, conversation_id: str, title: str) -> None:
        if conversation_id == self._orchestrator.conversation_id:
            self.title_label.setText(title)

    # ==================== Actions ====================

    def _on_prompt_submitted(self, prompt: str) -> None:
        try:
            self._orchestrator.submit(prompt)
        except FaceoffError as e:
            QMessageBox.warning(self, "Cannot Send", str(e))
            return
        self.input_panel.clear()

    def _on_stop_all(self) -> None:
        if self._orchestrator.is_any_streaming:
            self._orchestrator.stop_all()
            self.status_bar.showMessage("Stopped all streams", 2000)

    def _on_new_comparison(self) -> None:
        self._orchestrator.clear()
        self.title_label.setText("New comparison")
        self.input_panel.focus_input()
        self.status_bar.showMessage("New comparison started", 2000)

    def _on_open_history(self) -> None:
        dialog = HistoryDialog(self._store, self)
        if not dialog.exec():
            return
        conversation_id = dialog.get_selected_conversation_id()
        if not conversation_id:
            return
        try:
            self._orchestrator.load_conversation(conversation_id)
        except FaceoffError as e:
            QMessageBox.warning(self, "Cannot Open Conversation", str(e))
            return
        self.title_label.setText(self._orchestrator.conversation_title or "Untitled conversation")

    def _on_open_presets(self) -> None:
        dialog = PresetDialog(self._store, self._orchestrator.model_selection, self)
        if not dialog.exec():
            return
        preset = dialog.get_selected_preset()
        if preset is None:
            return
        try:
            self._orchestrator.load_preset(preset.models)
        except FaceoffError as e:
            self.status_bar.showMessage(str(e), 4000)
            return
        self.status_bar.showMessage(f"Loaded preset '{preset.name}'", 2000)

    def _on_open_api_logs(self) -> None:
        ApiLogsDialog(self._store, self).exec()

    def _on_open_settings(self) -> None:
        dialog = SettingsDialog(
            persistence.preferences.openrouter_api_key,
            key_from_environment=bool(get_env_api_key("openrouter")),
            parent=self,
        )
        if not dialog.exec():
            return
        try:
            persistence.update_api_key(dialog.get_api_key())
        except OSError as e:
            QMessageBox.warning(self, "Settings", f"Could not save settings: {e}")
            return
        self._update_mode_label()
        # The free-mode list is filtered, so the cache no longer applies
        self._catalog.clear_cache()
        self._create_task(self._load_models(force_refresh=True), name="refresh_models")

    def _on_export(self) -> None:
        if not self._orchestrator.has_any_messages:
            self.status_bar.showMessage("No comparison to export", 2000)
            return

        filepath, _ = QFileDialog.getSaveFileName(
            self,
            "Export Comparison",
            generate_export_filename(),
            "Markdown Files (*.md);;All Files (*.*)",
        )
        if not filepath:
            return
        if not filepath.endswith(".md"):
            filepath += ".md"

        try:
            save_markdown_export(
                Path(filepath),
                [(p.model_id, p.messages) for p in self._orchestrator.panels],
                title=self._orchestrator.conversation_title,
                conversation_id=self._orchestrator.conversation_id,
            )
        except OSError as e:
            self.status_bar.showMessage(f"Export failed: {e}", 5000)
            return
        self.status_bar.showMessage(f"Exported to {Path(filepath).name}", 3000)

    # ==================== Shutdown ====================

    def closeEvent(self, event) -> None:
        """Stop streams, cancel background work and save window state."""
        self._orchestrator.stop_all()
        for task in list(self._active_tasks):
            task.cancel()
        self._save_window_state()
        super().closeEvent(event)

    async def shutdown(self) -> None:
        """Wait for stream and title tasks to wind down."""
        await self._orchestrator.aclose(timeout=settings.task_cancellation_timeout)

    def _save_window_state(self) -> None:
        try:
            if self.isMaximized():
                prefs = persistence.preferences
                persistence.update_window_state(
                    x=prefs.window.x,
                    y=prefs.window.y,
                    width=prefs.window.width,
                    height=prefs.window.height,
                    maximized=True,
                )
            else:
                geometry = self.geometry()
                persistence.update_window_state(
                    x=geometry.x(),
                    y=geometry.y(),
                    width=geometry.width(),
                    height=geometry.height(),
                )
        except OSError as e:
            logger.warning("Could not save window state: %s", e)
