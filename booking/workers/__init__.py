"""
Background workers.

- outbox_worker: Retries pending Google Calendar side effects
- instance_status_worker: Polls WhatsApp instance connection state
"""
