from .batch import ReceiptBatch
from .transaction import ReceiptTransaction, ReceiptFile
from .rule import ReceiptRule
from .log import ReceiptTransactionLog
from .cron_run import CronJobRun
from .audit import AuditEvent, AIUsageEvent

__all__ = [
    "ReceiptBatch",
    "ReceiptTransaction",
    "ReceiptFile",
    "ReceiptRule",
    "ReceiptTransactionLog",
    "CronJobRun",
    "AuditEvent",
    "AIUsageEvent",
]
