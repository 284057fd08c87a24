"""Enterprise authorization, secret governance and audited execution for the Meta CLI."""

import logging

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())
