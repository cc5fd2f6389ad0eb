from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from ._core_base import *  # noqa: F401,F403
from ._core_extract import *  # noqa: F401,F403
from ._core_build import *  # noqa: F401,F403
from ._core_policy import *  # noqa: F401,F403
from ._core_analysis import *  # noqa: F401,F403
from ._core_compare import *  # noqa: F401,F403
from ._core_snapshot import *  # noqa: F401,F403
