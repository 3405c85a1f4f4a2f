"""Dialogs: conversation history, presets, API logs and settings."""

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from PySide6.QtWidgets import (
    QDialog,
    QWidget,
    QVBoxLayout,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QListWidget,
    QListWidgetItem,
    QPushButton,
    QTableWidget,
    QTableWidgetItem,
    QHeaderView,
    QMessageBox,
    QFileDialog,
)
from PySide6.QtCore import Qt

from ..config.themes import (
    theme,
    fonts,
    metrics,
    primary_button_style,
    secondary_button_style,
    danger_button_style,
)
from ..errors import PersistenceError
from ..storage import ConversationRecord, PresetRecord
from ..storage.conversation_store import ConversationStore
from ..utils.export import (
    export_conversation_markdown,
    generate_export_filename,
)
from ..utils.formatting import format_cost, format_latency


def _format_timestamp(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M")


def _title_label(text: str) -> QLabel:
    label = QLabel(text)
    label.setStyleSheet(f"""
        QLabel {{
            color: {theme.text_primary};
            font-size: 18px;
            font-weight: 600;
            font-family: {fonts.ui};
        }}
    """)
    return label


class HistoryDialog(QDialog):
    """Browse, open and delete stored conversations."""

    def __init__(self, store: ConversationStore, parent: Optional[QWidget] = None) -> None:
        """Initialize the history dialog.

        Args:
            store: Conversation store to browse
            parent: Parent widget
        """
        super().__init__(parent)
        self._store = store
        self._conversations: List[ConversationRecord] = []
        self._selected_id: Optional[str] = None
        self._setup_ui()
        self._load_conversations()

    def _setup_ui(self) -> None:
        self.setWindowTitle("Conversation History")
        self.setMinimumSize(560, 440)
        self.setModal(True)

        layout = QVBoxLayout(self)
        layout.setContentsMargins(
            metrics.padding_large,
            metrics.padding_large,
            metrics.padding_large,
            metrics.padding_large,
        )
        layout.setSpacing(metrics.padding_medium)
        layout.addWidget(_title_label("Conversation History"))

        self.conversation_list = QListWidget()
        self.conversation_list.itemDoubleClicked.connect(self._on_item_double_clicked)
        self.conversation_list.itemSelectionChanged.connect(self._on_selection_changed)
        layout.addWidget(self.conversation_list, stretch=1)

        self.info_label = QLabel("")
        self.info_label.setWordWrap(True)
        self.info_label.setStyleSheet(f"""
            QLabel {{
                color: {theme.text_muted};
                font-size: {metrics.font_small}px;
                font-family: {fonts.mono};
            }}
        """)
        layout.addWidget(self.info_label)

        buttons = QHBoxLayout()
        self.delete_button = QPushButton("Delete")
        self.delete_button.setStyleSheet(danger_button_style())
        self.delete_button.setEnabled(False)
        self.delete_button.clicked.connect(self._on_delete_clicked)
        buttons.addWidget(self.delete_button)

        self.export_button = QPushButton("Export...")
        self.export_button.setStyleSheet(secondary_button_style())
        self.export_button.setEnabled(False)
        self.export_button.clicked.connect(self._on_export_clicked)
        buttons.addWidget(self.export_button)

        buttons.addStretch()

        cancel_btn = QPushButton("Cancel")
        cancel_btn.setStyleSheet(secondary_button_style())
        cancel_btn.clicked.connect(self.reject)
        buttons.addWidget(cancel_btn)

        self.open_button = QPushButton("Open")
        self.open_button.setStyleSheet(primary_button_style())
        self.open_button.setEnabled(False)
        self.open_button.clicked.connect(self._on_open_clicked)
        buttons.addWidget(self.open_button)
        layout.addLayout(buttons)

    def _load_conversations(self) -> None:
        self.conversation_list.clear()
        try:
            self._conversations = self._store.list_conversations(limit=200)
        except PersistenceError as e:
            self.info_label.setText(str(e))
            self._conversations = []

        if not self._conversations:
            self.conversation_list.addItem("No saved conversations")
            self.conversation_list.item(0).setFlags(Qt.ItemFlag.NoItemFlags)
            return

        for conversation in self._conversations:
            title = conversation.title or "Untitled conversation"
            item = QListWidgetItem(f"{title}\n{_format_timestamp(conversation.updated_at)}")
            item.setData(Qt.ItemDataRole.UserRole, conversation.id)
            self.conversation_list.addItem(item)

    def _current_id(self) -> Optional[str]:
        items = self.conversation_list.selectedItems()
        if not items:
            return None
        return items[0].data(Qt.ItemDataRole.UserRole)

    def _on_selection_changed(self) -> None:
        conversation_id = self._current_id()
        self.open_button.setEnabled(bool(conversation_id))
        self.delete_button.setEnabled(bool(conversation_id))
        self.export_button.setEnabled(bool(conversation_id))
        conversation = next((c for c in self._conversations if c.id == conversation_id), None)
        if conversation is None:
            self.info_label.setText("")
            return
        self.info_label.setText(
            f"Models: {', '.join(conversation.models) or 'none'}\n"
            f"Created: {_format_timestamp(conversation.created_at)}"
        )

    def _on_item_double_clicked(self, item: QListWidgetItem) -> None:
        conversation_id = item.data(Qt.ItemDataRole.UserRole)
        if conversation_id:
            self._selected_id = conversation_id
            self.accept()

    def _on_open_clicked(self) -> None:
        conversation_id = self._current_id()
        if conversation_id:
            self._selected_id = conversation_id
            self.accept()

    def _on_delete_clicked(self) -> None:
        conversation_id = self._current_id()
        if not conversation_id:
            return
        answer = QMessageBox.question(
            self,
            "Delete Conversation",
            "Delete this conversation and all of its messages?",
        )
        if answer != QMessageBox.StandardButton.Yes:
            return
        try:
            self._store.delete_conversation(conversation_id)
        except PersistenceError as e:
            self.info_label.setText(str(e))
            return
        self._load_conversations()

    def _on_export_clicked(self) -> None:
        conversation_id = self._current_id()
        if not conversation_id:
            return
        try:
            found = self._store.get_conversation(conversation_id)
        except PersistenceError as e:
            self.info_label.setText(str(e))
            return
        if found is None:
            self._load_conversations()
            return

        filepath, _ = QFileDialog.getSaveFileName(
            self,
            "Export Conversation",
            generate_export_filename(),
            "Markdown Files (*.md);;All Files (*.*)",
        )
        if not filepath:
            return
        if not filepath.endswith(".md"):
            filepath += ".md"

        conversation, messages = found
        try:
            Path(filepath).write_text(
                export_conversation_markdown(conversation, messages), encoding="utf-8"
            )
        except OSError as e:
            self.info_label.setText(f"Export failed: {e}")
            return
        self.info_label.setText(f"Exported to {Path(filepath).name}")

    def get_selected_conversation_id(self) -> Optional[str]:
        return self._selected_id


class PresetDialog(QDialog):
    """Save the current selection as a preset or pick a stored one."""

    def __init__(
        self,
        store: ConversationStore,
        current_models: List[Optional[str]],
        parent: Optional[QWidget] = None,
    ) -> None:
        """Initialize the preset dialog.

        Args:
            store: Store holding the presets
            current_models: Current panel selection, offered for saving
            parent: Parent widget
        """
        super().__init__(parent)
        self._store = store
        self._current_models = list(current_models)
        self._presets: List[PresetRecord] = []
        self._selected: Optional[PresetRecord] = None
        self._setup_ui()
        self._load_presets()

    def _setup_ui(self) -> None:
        self.setWindowTitle("Model Presets")
        self.setMinimumSize(480, 400)
        self.setModal(True)

        layout = QVBoxLayout(self)
        layout.setSpacing(metrics.padding_medium)
        layout.addWidget(_title_label("Model Presets"))

        self.preset_list = QListWidget()
        self.preset_list.itemDoubleClicked.connect(lambda _: self._on_load_clicked())
        layout.addWidget(self.preset_list, stretch=1)

        save_row = QHBoxLayout()
        self.name_input = QLineEdit()
        self.name_input.setPlaceholderText("Preset name")
        save_row.addWidget(self.name_input, stretch=1)
        save_btn = QPushButton("Save Current")
        save_btn.setStyleSheet(secondary_button_style())
        save_btn.setEnabled(any(self._current_models))
        save_btn.clicked.connect(self._on_save_clicked)
        save_row.addWidget(save_btn)
        layout.addLayout(save_row)

        self.status_label = QLabel("")
        self.status_label.setStyleSheet(f"QLabel {{ color: {theme.text_muted}; }}")
        layout.addWidget(self.status_label)

        buttons = QHBoxLayout()
        delete_btn = QPushButton("Delete")
        delete_btn.setStyleSheet(danger_button_style())
        delete_btn.clicked.connect(self._on_delete_clicked)
        buttons.addWidget(delete_btn)
        buttons.addStretch()
        close_btn = QPushButton("Close")
        close_btn.setStyleSheet(secondary_button_style())
        close_btn.clicked.connect(self.reject)
        buttons.addWidget(close_btn)
        load_btn = QPushButton("Load")
        load_btn.setStyleSheet(primary_button_style())
        load_btn.clicked.connect(self._on_load_clicked)
        buttons.addWidget(load_btn)
        layout.addLayout(buttons)

    def _load_presets(self) -> None:
        self.preset_list.clear()
        try:
            self._presets = self._store.list_presets()
        except PersistenceError as e:
            self.status_label.setText(str(e))
            self._presets = []
        for preset in self._presets:
            models = ", ".join(m for m in preset.models if m) or "empty"
            item = QListWidgetItem(f"{preset.name}  ({models})")
            item.setData(Qt.ItemDataRole.UserRole, preset.id)
            self.preset_list.addItem(item)

    def _current_preset(self) -> Optional[PresetRecord]:
        items = self.preset_list.selectedItems()
        if not items:
            return None
        preset_id = items[0].data(Qt.ItemDataRole.UserRole)
        return next((p for p in self._presets if p.id == preset_id), None)

    def _on_save_clicked(self) -> None:
        name = self.name_input.text().strip()
        if not name:
            self.status_label.setText("Enter a preset name")
            return
        try:
            self._store.save_preset(PresetRecord.create(name, self._current_models))
        except PersistenceError as e:
            self.status_label.setText(str(e))
            return
        self.name_input.clear()
        self.status_label.setText(f"Saved preset '{name}'")
        self._load_presets()

    def _on_delete_clicked(self) -> None:
        preset = self._current_preset()
        if preset is None:
            return
        try:
            self._store.delete_preset(preset.id)
        except PersistenceError as e:
            self.status_label.setText(str(e))
            return
        self._load_presets()

    def _on_load_clicked(self) -> None:
        preset = self._current_preset()
        if preset is not None:
            self._selected = preset
            self.accept()

    def get_selected_preset(self) -> Optional[PresetRecord]:
        return self._selected


class ApiLogsDialog(QDialog):
    """Aggregate API statistics, per-model breakdown and recent calls."""

    PAGE_SIZE = 100

    def __init__(self, store: ConversationStore, parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self._store = store
        self._setup_ui()
        self._load()

    def _setup_ui(self) -> None:
        self.setWindowTitle("API Logs")
        self.setMinimumSize(820, 560)

        layout = QVBoxLayout(self)
        layout.setSpacing(metrics.padding_medium)
        layout.addWidget(_title_label("API Logs"))

        self.summary_label = QLabel("")
        self.summary_label.setStyleSheet(f"""
            QLabel {{
                color: {theme.text_secondary};
                font-family: {fonts.mono};
            }}
        """)
        layout.addWidget(self.summary_label)

        self.model_table = self._make_table(["Model", "Calls", "Tokens", "Cost", "Avg latency"])
        layout.addWidget(self.model_table, stretch=1)

        self.log_table = self._make_table(
            ["Time", "Model", "Status", "Tokens", "Latency", "Cost", "Error"]
        )
        layout.addWidget(self.log_table, stretch=2)

        buttons = QHBoxLayout()
        buttons.addStretch()
        refresh_btn = QPushButton("Refresh")
        refresh_btn.setStyleSheet(secondary_button_style())
        refresh_btn.clicked.connect(self._load)
        buttons.addWidget(refresh_btn)
        close_btn = QPushButton("Close")
        close_btn.setStyleSheet(primary_button_style())
        close_btn.clicked.connect(self.accept)
        buttons.addWidget(close_btn)
        layout.addLayout(buttons)

    def _make_table(self, headers: List[str]) -> QTableWidget:
        table = QTableWidget(0, len(headers))
        table.setHorizontalHeaderLabels(headers)
        table.verticalHeader().setVisible(False)
        table.setEditTriggers(QTableWidget.EditTrigger.NoEditTriggers)
        table.horizontalHeader().setSectionResizeMode(QHeaderView.ResizeMode.Stretch)
        return table

    def _fill(self, table: QTableWidget, rows: List[List[str]]) -> None:
        table.setRowCount(len(rows))
        for row_index, row in enumerate(rows):
            for column, value in enumerate(row):
                table.setItem(row_index, column, QTableWidgetItem(value))

    def _load(self) -> None:
        try:
            stats = self._store.get_api_stats()
            by_model = self._store.get_stats_by_model()
            logs, total = self._store.get_api_logs(limit=self.PAGE_SIZE)
        except PersistenceError as e:
            self.summary_label.setText(str(e))
            return

        self.summary_label.setText(
            f"{stats.total_calls} calls ({stats.successful_calls} ok, "
            f"{stats.failed_calls} failed) | {stats.total_tokens:,} tokens | "
            f"{format_cost(stats.total_cost)} | avg {format_latency(stats.avg_latency)} | "
            f"showing {len(logs)} of {total}"
        )
        self._fill(self.model_table, [
            [
                s.model_id,
                str(s.call_count),
                f"{s.total_tokens:,}",
                format_cost(s.total_cost),
                format_latency(s.avg_latency),
            ]
            for s in by_model
        ])
        self._fill(self.log_table, [
            [
                _format_timestamp(log.created_at),
                log.model_id,
                log.status,
                f"{log.total_tokens:,}" if log.total_tokens is not None else "-",
                format_latency(log.latency_ms),
                format_cost(log.cost),
                log.error_message or "",
            ]
            for log in logs
        ])


class SettingsDialog(QDialog):
    """Enter or clear the OpenRouter API key."""

    def __init__(
        self,
        current_key: Optional[str],
        key_from_environment: bool = False,
        parent: Optional[QWidget] = None,
    ) -> None:
        """Initialize the settings dialog.

        Args:
            current_key: Key saved in preferences
            key_from_environment: Whether OPENROUTER_API_KEY overrides the saved key
            parent: Parent widget
        """
        super().__init__(parent)
        self._key: Optional[str] = current_key
        self._setup_ui(current_key, key_from_environment)

    def _setup_ui(self, current_key: Optional[str], key_from_environment: bool) -> None:
        self.setWindowTitle("Settings")
        self.setMinimumWidth(480)
        self.setModal(True)

        layout = QVBoxLayout(self)
        layout.setSpacing(metrics.padding_medium)
        layout.addWidget(_title_label("Settings"))

        desc = QLabel(
            "OpenRouter API key. Without a key only free models are available."
        )
        desc.setWordWrap(True)
        desc.setStyleSheet(f"QLabel {{ color: {theme.text_secondary}; }}")
        layout.addWidget(desc)

        self.key_input = QLineEdit(current_key or "")
        self.key_input.setEchoMode(QLineEdit.EchoMode.Password)
        self.key_input.setPlaceholderText("sk-or-...")
        layout.addWidget(self.key_input)

        if key_from_environment:
            env_note = QLabel("OPENROUTER_API_KEY is set in the environment and takes precedence.")
            env_note.setWordWrap(True)
            env_note.setStyleSheet(f"QLabel {{ color: {theme.warning}; }}")
            layout.addWidget(env_note)

        buttons = QHBoxLayout()
        clear_btn = QPushButton("Clear Key")
        clear_btn.setStyleSheet(secondary_button_style())
        clear_btn.clicked.connect(self.key_input.clear)
        buttons.addWidget(clear_btn)
        buttons.addStretch()
        cancel_btn = QPushButton("Cancel")
        cancel_btn.setStyleSheet(secondary_button_style())
        cancel_btn.clicked.connect(self.reject)
        buttons.addWidget(cancel_btn)
        save_btn = QPushButton("Save")
        save_btn.setStyleSheet(primary_button_style())
        save_btn.clicked.connect(self._on_save)
        buttons.addWidget(save_btn)
        layout.addLayout(buttons)

    def _on_save(self) -> None:
        self._key = self.key_input.text().strip() or None
        self.accept()

    def get_api_key(self) -> Optional[str]:
        return self._key
