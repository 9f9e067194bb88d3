from __future__ import annotations

import os

# Block products run on the CPU backend under test.
os.environ.setdefault("JAX_PLATFORM_NAME", "cpu")
os.environ.setdefault("JAX_PLATFORMS", "cpu")
