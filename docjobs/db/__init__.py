from docjobs.db.connection import Database, Base
from docjobs.db.models import Account, Job, JobState, UsageRecord

__all__ = ['Database', 'Base', 'Account', 'Job', 'JobState', 'UsageRecord']
