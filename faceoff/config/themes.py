"""Dark theme for Faceoff.

Colors, fonts and spacing shared by every widget, plus the application
stylesheet.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class ThemeColors:
    """Dark color scheme with one accent per panel."""

    # Background layers
    background: str = "#0b0d12"  # App background
    background_secondary: str = "#12151c"  # Panels
    background_tertiary: str = "#0e1016"  # Status bar, recessed areas
    background_elevated: str = "#1a1e27"  # Inputs, dropdowns, dialogs

    # Text hierarchy
    text_primary: str = "#f3f4f6"
    text_secondary: str = "#cbd5e1"
    text_muted: str = "#94a3b8"
    text_disabled: str = "#64748b"

    # Accent
    accent: str = "#14b8a6"  # Teal
    accent_hover: str = "#2dd4bf"
    accent_pressed: str = "#0d9488"
    accent_subtle: str = "rgba(20, 184, 166, 0.15)"

    # Per-panel header accents, in panel order
    panel_accents: tuple = ("#14b8a6", "#8b5cf6", "#f59e0b")

    # Borders
    border: str = "#334155"
    border_subtle: str = "#1e293b"
    border_focus: str = "#14b8a6"

    # Status
    success: str = "#10b981"
    warning: str = "#f59e0b"
    error: str = "#ef4444"
    error_light: str = "#f87171"

    # Message blocks
    user_block: str = "#1e293b"
    assistant_block: str = "#151922"

    # Scrollbar
    scrollbar_handle: str = "#334155"
    scrollbar_handle_hover: str = "#475569"

    selection: str = "rgba(20, 184, 166, 0.3)"

    def panel_accent(self, index: int) -> str:
        return self.panel_accents[index % len(self.panel_accents)]


@dataclass
class ThemeFonts:
    """Font families."""

    ui: str = "'Inter', 'Segoe UI', system-ui, sans-serif"
    chat: str = "'Inter', 'Segoe UI', sans-serif"
    mono: str = "'JetBrains Mono', 'Fira Code', 'Consolas', monospace"


@dataclass
class ThemeMetrics:
    """Spacing and sizing."""

    radius_small: int = 6
    radius_medium: int = 8
    radius_large: int = 12

    padding_small: int = 8
    padding_medium: int = 12
    padding_large: int = 16

    font_small: int = 11
    font_normal: int = 13
    font_medium: int = 14


# Global instances
theme = ThemeColors()
fonts = ThemeFonts()
metrics = ThemeMetrics()


def _button_style(
    background: str,
    hover: str,
    text: str = "white",
    border: str = "none",
    pressed: Optional[str] = None,
) -> str:
    filled = border == "none"
    weight = "600" if filled else "normal"
    disabled_background = theme.border if filled else "transparent"
    pressed_rule = f"QPushButton:pressed {{ background-color: {pressed}; }}" if pressed else ""
    return f"""
        QPushButton {{
            background-color: {background};
            color: {text};
            border: {border};
            border-radius: {metrics.radius_medium}px;
            padding: {metrics.padding_small}px {metrics.padding_large}px;
            font-weight: {weight};
            font-family: {fonts.ui};
        }}
        QPushButton:hover {{ background-color: {hover}; color: {theme.text_primary}; }}
        {pressed_rule}
        QPushButton:disabled {{
            background-color: {disabled_background};
            color: {theme.text_disabled};
        }}
    """


def primary_button_style() -> str:
    return _button_style(theme.accent, theme.accent_hover, pressed=theme.accent_pressed)


def secondary_button_style() -> str:
    return _button_style(
        "transparent",
        theme.background_elevated,
        text=theme.text_secondary,
        border=f"1px solid {theme.border}",
    )


def danger_button_style() -> str:
    return _button_style(theme.error, theme.error_light)


def get_stylesheet() -> str:
    """Generate the application stylesheet.

    Returns:
        CSS stylesheet string for Qt
    """
    return f"""
        QMainWindow {{
            background-color: {theme.background};
        }}

        QWidget {{
            background-color: {theme.background};
            color: {theme.text_primary};
            font-family: {fonts.ui};
            font-size: {metrics.font_normal}px;
        }}

        QScrollBar:vertical {{
            background-color: transparent;
            width: 8px;
            margin: 0;
        }}

        QScrollBar::handle:vertical {{
            background-color: {theme.scrollbar_handle};
            min-height: 30px;
            border-radius: 4px;
        }}

        QScrollBar::handle:vertical:hover {{
            background-color: {theme.scrollbar_handle_hover};
        }}

        QScrollBar::add-line:vertical,
        QScrollBar::sub-line:vertical {{
            height: 0;
        }}

        QTextEdit, QLineEdit {{
            background-color: {theme.background_elevated};
            color: {theme.text_primary};
            border: 1px solid {theme.border};
            border-radius: {metrics.radius_medium}px;
            padding: {metrics.padding_small}px {metrics.padding_medium}px;
            selection-background-color: {theme.selection};
        }}

        QTextEdit:focus, QLineEdit:focus {{
            border: 1px solid {theme.border_focus};
        }}

        QTextBrowser {{
            background-color: {theme.background_secondary};
            border: none;
            font-family: {fonts.chat};
            font-size: {metrics.font_medium}px;
        }}

        QLabel {{
            background-color: transparent;
        }}

        QComboBox {{
            background-color: {theme.background_elevated};
            border: 1px solid {theme.border};
            border-radius: {metrics.radius_medium}px;
            padding: {metrics.padding_small}px;
        }}

        QComboBox:hover {{
            border-color: {theme.accent};
        }}

        QComboBox QAbstractItemView {{
            background-color: {theme.background_elevated};
            border: 1px solid {theme.border};
            selection-background-color: {theme.accent};
        }}

        QListWidget {{
            background-color: {theme.background_secondary};
            border: 1px solid {theme.border};
            border-radius: {metrics.radius_medium}px;
            outline: none;
        }}

        QListWidget::item {{
            padding: {metrics.padding_small}px {metrics.padding_medium}px;
        }}

        QListWidget::item:selected {{
            background-color: {theme.accent_subtle};
            border-left: 3px solid {theme.accent};
        }}

        QTableWidget {{
            background-color: {theme.background_secondary};
            alternate-background-color: {theme.background_tertiary};
            border: 1px solid {theme.border};
            gridline-color: {theme.border_subtle};
            font-family: {fonts.mono};
            font-size: {metrics.font_small}px;
        }}

        QHeaderView::section {{
            background-color: {theme.background_elevated};
            color: {theme.text_muted};
            border: none;
            border-bottom: 1px solid {theme.border};
            padding: {metrics.padding_small // 2}px {metrics.padding_small}px;
        }}

        QStatusBar {{
            background-color: {theme.background_tertiary};
            color: {theme.text_muted};
            border-top: 1px solid {theme.border_subtle};
            font-size: {metrics.font_small}px;
        }}

        QDialog {{
            background-color: {theme.background_secondary};
        }}

        QMenu {{
            background-color: {theme.background_elevated};
            border: 1px solid {theme.border};
            padding: {metrics.padding_small}px;
        }}

        QMenu::item:selected {{
            background-color: {theme.accent};
        }}
    """
