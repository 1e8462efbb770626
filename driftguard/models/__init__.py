from driftguard.models.baseline import BaselineRecord

__all__ = ["BaselineRecord"]
