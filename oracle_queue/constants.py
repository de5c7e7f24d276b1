"""Shared naming and broker-argument constants.

Queue and exchange names are derived from the work queue name so every process
touching the same work queue agrees on the retry topology without coordination:

- ``<queue>-retry``: fanout dead-letter exchange bound to the work queue
- ``<queue>-retry-<delay_ms>``: delay queue for one backoff step
- ``<queue>-check-tx-status``: delay queue for transaction-status rechecks
"""

DEAD_LETTER_EXCHANGE_SUFFIX = "-retry"
RETRY_QUEUE_INFIX = "-retry-"
RESEND_QUEUE_SUFFIX = "-check-tx-status"

# Reserved header carrying the retry count of a message
RETRIES_HEADER = "x-retries"

# An idle delay queue is removed by the broker after this many TTLs
QUEUE_EXPIRY_FACTOR = 10

# One unacknowledged message per consumer channel
CONSUMER_PREFETCH = 1

# Backoff in seconds, indexed by attempt number (1-based), clamped to the last entry
DEFAULT_RETRY_SEQUENCE_SECONDS = [5, 15, 60, 300, 900, 3600]

# Delay before a transaction status is checked again, in milliseconds
DEFAULT_TRANSACTION_RESEND_TIMEOUT_MS = 60000

CONTENT_TYPE_JSON = "application/json"

# Roles
ROLE_WATCHER = "watcher"
ROLE_SENDER = "sender"
ROLE_WORKER = "worker"

# Dispositions
DISPOSITION_ACK = "ack"
DISPOSITION_NACK = "nack"
DISPOSITION_RETRY = "retry"
DISPOSITION_RESEND = "resend"
