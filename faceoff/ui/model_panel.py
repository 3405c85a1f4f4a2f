"""One comparison panel: model selector, transcript and stats footer."""

from typing import List, Optional

from PySide6.QtWidgets import (
    QWidget,
    QVBoxLayout,
    QHBoxLayout,
    QLabel,
    QComboBox,
    QTextBrowser,
    QFrame,
)
from PySide6.QtCore import Qt, Signal

from ..config.models import ModelInfo
from ..config.themes import theme, fonts, metrics
from ..orchestrator.panel_orchestrator import PanelState
from ..utils.formatting import format_panel_stats, format_price
from ..utils.markdown_renderer import render_transcript


NO_MODEL_LABEL = "No model"


class ModelPanelWidget(QFrame):
    """Displays one PanelState and lets the user pick its model."""

    model_changed = Signal(int, str)  # panel index, model id ("" for none)

    def __init__(self, index: int, parent: Optional[QWidget] = None) -> None:
        """Initialize the panel.

        Args:
            index: Panel index
            parent: Parent widget
        """
        super().__init__(parent)
        self._index = index
        self._accent = theme.panel_accent(index)
        self._models: List[ModelInfo] = []
        self._updating_selector = False
        self._setup_ui()

    @property
    def index(self) -> int:
        return self._index

    def _setup_ui(self) -> None:
        self.setStyleSheet(f"""
            ModelPanelWidget {{
                background-color: {theme.background_secondary};
                border: 1px solid {theme.border_subtle};
                border-top: 3px solid {self._accent};
                border-radius: {metrics.radius_medium}px;
            }}
        """)

        layout = QVBoxLayout(self)
        layout.setContentsMargins(
            metrics.padding_small,
            metrics.padding_small,
            metrics.padding_small,
            metrics.padding_small,
        )
        layout.setSpacing(metrics.padding_small)

        # Header: panel number and model selector
        header = QHBoxLayout()
        number = QLabel(f"{self._index + 1}")
        number.setStyleSheet(f"""
            QLabel {{
                color: {self._accent};
                font-weight: 700;
                font-size: {metrics.font_medium}px;
            }}
        """)
        header.addWidget(number)

        self.model_selector = QComboBox()
        self.model_selector.setEditable(False)
        self.model_selector.currentIndexChanged.connect(self._on_selector_changed)
        header.addWidget(self.model_selector, stretch=1)
        layout.addLayout(header)

        # Transcript
        self.transcript = QTextBrowser()
        self.transcript.setOpenExternalLinks(True)
        layout.addWidget(self.transcript, stretch=1)

        # Footer: status, tokens, latency, cost
        self.stats_label = QLabel("")
        self.stats_label.setWordWrap(True)
        self.stats_label.setStyleSheet(f"""
            QLabel {{
                color: {theme.text_muted};
                font-family: {fonts.mono};
                font-size: {metrics.font_small}px;
            }}
        """)
        layout.addWidget(self.stats_label)

    # ==================== Model selector ====================

    def set_models(self, models: List[ModelInfo], selected: Optional[str]) -> None:
        """Fill the selector.

        Args:
            models: Models to offer
            selected: Model to show as selected
        """
        self._models = list(models)
        self._updating_selector = True
        try:
            self.model_selector.clear()
            self.model_selector.addItem(NO_MODEL_LABEL, "")
            for model in self._models:
                label = model.display_name
                if model.is_free:
                    label += "  (free)"
                self.model_selector.addItem(label, model.model_id)
                tooltip = (
                    f"{model.model_id}\n"
                    f"Input {format_price(model.prompt_price)} | "
                    f"Output {format_price(model.completion_price)}"
                )
                self.model_selector.setItemData(
                    self.model_selector.count() - 1, tooltip, Qt.ItemDataRole.ToolTipRole
                )
            self._select(selected)
        finally:
            self._updating_selector = False

    def _select(self, model_id: Optional[str]) -> None:
        position = self.model_selector.findData(model_id or "")
        if position < 0 and model_id:
            # Restored selection missing from the current list
            self.model_selector.addItem(model_id, model_id)
            position = self.model_selector.count() - 1
        self.model_selector.setCurrentIndex(max(position, 0))

    def _on_selector_changed(self, position: int) -> None:
        if self._updating_selector or position < 0:
            return
        self.model_changed.emit(self._index, self.model_selector.itemData(position) or "")

    # ==================== Rendering ====================

    def render_state(self, panel: PanelState) -> None:
        """Refresh the widget from the panel state."""
        self._updating_selector = True
        try:
            self._select(panel.model_id)
        finally:
            self._updating_selector = False
        self.model_selector.setEnabled(not panel.is_streaming)

        self.transcript.setHtml(
            render_transcript(panel.messages, panel.current_response, self._accent)
        )
        scrollbar = self.transcript.verticalScrollBar()
        scrollbar.setValue(scrollbar.maximum())

        if panel.error:
            self.stats_label.setStyleSheet(
                f"QLabel {{ color: {theme.error_light}; font-size: {metrics.font_small}px; }}"
            )
            self.stats_label.setText(f"Error: {panel.error}")
            return

        self.stats_label.setStyleSheet(f"""
            QLabel {{
                color: {theme.text_muted};
                font-family: {fonts.mono};
                font-size: {metrics.font_small}px;
            }}
        """)
        if panel.is_streaming:
            self.stats_label.setText("Streaming...")
        else:
            self.stats_label.setText(
                format_panel_stats(panel.usage, panel.latency_ms, panel.cost)
            )
