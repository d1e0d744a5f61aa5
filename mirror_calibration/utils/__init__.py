"""Cross-cutting utilities (lowest dependency layer).

    - Atomic I/O (fs)
    - Unified logging (logging_config)

No module in utils/ imports from the rest of the package at runtime.

Convenience imports:
    from mirror_calibration.utils import fs
    from mirror_calibration.utils.logging_config import setup_logging, log_context
"""

from . import fs
from . import logging_config
