# GrievanceEngine: wires the workflow components to one store

import logging
from typing import Iterable, Optional

from .classifier import PriorityClassifier
from .errors import EngineError
from .gateway import PersistenceGateway
from .ledger import CreditLedger
from .lifecycle import GrievanceLifecycle, clean_submission
from .models import Grievance, User
from .moderation import ModerationState
from .notifications import NotificationDispatcher
from .users import UserDirectory

logger = logging.getLogger(__name__)


class GrievanceEngine:
    def __init__(self, gateway: PersistenceGateway,
                 classifier: Optional[PriorityClassifier] = None):
        self.gateway = gateway
        self.classifier = classifier or PriorityClassifier()
        self.users = UserDirectory(gateway)
        self.notifications = NotificationDispatcher(gateway)
        self.moderation = ModerationState(gateway, self.users, self.notifications)
        self.ledger = CreditLedger(gateway, self.users, self.moderation, self.notifications)
        self.lifecycle = GrievanceLifecycle(gateway, self.users, self.moderation,
                                            self.notifications, self.classifier)

    def submit(self, user: User, title: str, description: str,
               attachments: Iterable[str] = ()) -> Grievance:
        """Classify, spend a credit, then create the grievance.

        Creation is silent (no notification). If the grievance write fails after
        the credit was spent, the credit is given back before the error propagates.
        """
        title, description, attachments = clean_submission(title, description, attachments)
        detection = self.classifier.detect_grievance(title, description)
        self.ledger.consume(user)
        try:
            return self.lifecycle.create(user, title, description, attachments, detection)
        except EngineError:
            logger.warning("Grievance creation for %s failed; refunding credit", user.id)
            self.ledger.refund(user.id)
            raise
