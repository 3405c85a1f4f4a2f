"""Model Faceoff - compare LLM responses side by side.

Entry point for the application.
"""

import sys
import asyncio

from PySide6.QtWidgets import QApplication
from qasync import QEventLoop

from faceoff.config.settings import configure_logging
from faceoff.ui.main_window import ComparisonWindow


def main() -> int:
    """Run the Faceoff application.

    Returns:
        Exit code
    """
    configure_logging(verbose="--verbose" in sys.argv[1:])

    # Create Qt application
    app = QApplication(sys.argv)
    app.setApplicationName("Model Faceoff")
    app.setApplicationVersion("0.1.0")

    # Set up asyncio event loop with Qt integration
    loop = QEventLoop(app)
    asyncio.set_event_loop(loop)

    window = ComparisonWindow()
    window.show()

    with loop:
        loop.run_forever()
        loop.run_until_complete(window.shutdown())
    return 0


if __name__ == "__main__":
    sys.exit(main())
