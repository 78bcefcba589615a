"""bootimage: build, deploy and run a UEFI loader + bare-metal kernel.

Core design goals:
- Declarative task graph with memoized dependencies
- Guaranteed cleanup (the image is never left mounted)
- Idempotent operations (umount, strip, firmware vars)
- Host differences resolved once
- Centralized logging
"""

__version__ = "0.1.0"

__all__ = []
