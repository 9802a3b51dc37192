"""API routes for Loop Pilot.

Includes:
- loops: loop lifecycle, approval decisions and issue creation
"""

from loop_pilot.api.loops import router as loops_router

__all__ = ["loops_router"]
