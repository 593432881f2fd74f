"""
Shared test configuration.

Adds src/ to sys.path so the flat modules (correlation_engine,
reasoning_agent, store, ...) and the pipeline package import with plain
`import module_name`, and tests/ so the in-memory fakes import as `fakes`.
"""

import os
import sys

_tests_dir = os.path.abspath(os.path.dirname(__file__))
_src_dir = os.path.join(os.path.dirname(_tests_dir), "src")

if _src_dir not in sys.path:
    sys.path.insert(0, _src_dir)

if _tests_dir not in sys.path:
    sys.path.insert(1, _tests_dir)
