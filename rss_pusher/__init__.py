"""
RSS Pusher - Poll RSS feeds and push keyword matches to Telegram users.

A Python application that polls subscribed RSS/Atom feeds, detects new
items with a per-feed watermark and delivers items matching each user's
keyword rules as Telegram notifications.
"""

__version__ = "1.0.0"
