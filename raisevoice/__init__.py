# RaiseVoice grievance workflow engine

from .classifier import Detection, PriorityClassifier
from .engine import GrievanceEngine
from .gateway import MemoryGateway, MongoGateway, PersistenceGateway

__all__ = [
    "Detection", "GrievanceEngine", "MemoryGateway", "MongoGateway",
    "PersistenceGateway", "PriorityClassifier",
]
