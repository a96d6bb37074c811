"""Trigger sources: cron schedules, webhooks, events, files and message queues."""
