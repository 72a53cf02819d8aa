"""
Notification worker — drains the notification-jobs and completed-email
queues in bounded batches until told to stop.

Entry point: `worker.main.run` (console script `notification-worker`).
"""
