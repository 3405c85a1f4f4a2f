"""Prompt input with Send and Stop All buttons."""

from PySide6.QtWidgets import (
    QWidget,
    QHBoxLayout,
    QVBoxLayout,
    QTextEdit,
    QPushButton,
    QSizePolicy,
)
from PySide6.QtCore import Qt, Signal
from PySide6.QtGui import QKeyEvent

from ..config.themes import theme, metrics, primary_button_style, danger_button_style


class PromptInput(QTextEdit):
    """Plain-text prompt editor; Ctrl+Enter submits."""

    submit_requested = Signal()

    def __init__(self, parent: QWidget | None = None):
        super().__init__(parent)
        self.setPlaceholderText("Ask all models... (Ctrl+Enter to send)")
        self.setAcceptRichText(False)
        self.setMinimumHeight(56)
        self.setMaximumHeight(140)
        self.setSizePolicy(QSizePolicy.Policy.Expanding, QSizePolicy.Policy.Minimum)

    def keyPressEvent(self, event: QKeyEvent) -> None:
        if (
            event.key() in (Qt.Key.Key_Return, Qt.Key.Key_Enter)
            and event.modifiers() == Qt.KeyboardModifier.ControlModifier
        ):
            self.submit_requested.emit()
            return

        super().keyPressEvent(event)


class InputPanel(QWidget):
    """Panel containing the prompt input, Send and Stop All."""

    prompt_submitted = Signal(str)
    stop_requested = Signal()

    def __init__(self, parent: QWidget | None = None):
        """Initialize the input panel.

        Args:
            parent: Parent widget
        """
        super().__init__(parent)
        self._setup_ui()

    def _setup_ui(self) -> None:
        layout = QHBoxLayout(self)
        layout.setContentsMargins(
            metrics.padding_large,
            metrics.padding_medium,
            metrics.padding_large,
            metrics.padding_medium,
        )
        layout.setSpacing(metrics.padding_medium)

        self.input_field = PromptInput()
        self.input_field.submit_requested.connect(self._on_submit)
        layout.addWidget(self.input_field)

        buttons = QVBoxLayout()
        buttons.setSpacing(metrics.padding_small)

        self.send_button = QPushButton("Send")
        self.send_button.setMinimumWidth(96)
        self.send_button.setCursor(Qt.CursorShape.PointingHandCursor)
        self.send_button.setStyleSheet(primary_button_style())
        self.send_button.clicked.connect(self._on_submit)
        buttons.addWidget(self.send_button)

        self.stop_button = QPushButton("Stop All")
        self.stop_button.setMinimumWidth(96)
        self.stop_button.setCursor(Qt.CursorShape.PointingHandCursor)
        self.stop_button.setStyleSheet(danger_button_style())
        self.stop_button.setEnabled(False)
        self.stop_button.clicked.connect(self.stop_requested.emit)
        buttons.addWidget(self.stop_button)

        layout.addLayout(buttons)

        self.setStyleSheet(f"""
            InputPanel {{
                background-color: {theme.background_secondary};
                border-top: 1px solid {theme.border_subtle};
            }}
        """)

    def _on_submit(self) -> None:
        text = self.input_field.toPlainText()
        if text.strip() and self.send_button.isEnabled():
            self.prompt_submitted.emit(text)

    def set_streaming(self, streaming: bool) -> None:
        """Switch between the idle and streaming button states."""
        self.input_field.setEnabled(not streaming)
        self.send_button.setEnabled(not streaming)
        self.stop_button.setEnabled(streaming)
        self.send_button.setText("..." if streaming else "Send")

    def focus_input(self) -> None:
        self.input_field.setFocus()

    def clear(self) -> None:
        self.input_field.clear()
