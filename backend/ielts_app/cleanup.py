from __future__ import annotations
from datetime import datetime, timedelta
from sqlalchemy import delete
from sqlalchemy.orm import Session

from .models import AuthSession


def purge_older_than_one_week(db: Session) -> int:
	"""Drop token sessions that have not been used for a week."""
	threshold = datetime.utcnow() - timedelta(days=7)
	res = db.execute(delete(AuthSession).where(AuthSession.last_activity_at < threshold))
	db.commit()
	return res.rowcount or 0
