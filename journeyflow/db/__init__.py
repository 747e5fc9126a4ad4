from .models import JourneyRow, RunRow, RunStepRow
from .run_db import RunDB

__all__ = [
    "JourneyRow",
    "RunRow",
    "RunStepRow",
    "RunDB",
]
