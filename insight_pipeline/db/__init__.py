from insight_pipeline.db.models import Base, TimeStampMixin

__all__ = [
    "Base",
    "TimeStampMixin",
]
