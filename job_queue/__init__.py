"""
Notification queue: decouples notification creation from todo generation.

The dispatcher publishes, NotificationConsumer runs Todo Automation.
Backends: Redis Streams (production) and an in-process queue (development).
"""
