"""Test package for the dual n-back trainer.

Core tests drive the engine with a fake clock; UI tests run pygame with the
SDL dummy drivers so no window or audio device is opened. Run ``pytest``
from the project root.
"""
