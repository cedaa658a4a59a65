__version__ = "0.1.0"

import logging

from nush.nush_context import SetupError, build_context
from nush.nush_runtime import EvalResult, evaluate, evaluate_async

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = ["EvalResult", "SetupError", "build_context", "evaluate", "evaluate_async", "__version__"]
