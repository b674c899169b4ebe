from __future__ import annotations

import uuid
from datetime import datetime, timezone


class SystemClock:
    """Wall-clock time and identifier source shared by every component."""

    def now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def new_id(self) -> str:
        return str(uuid.uuid4())
