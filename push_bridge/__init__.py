"""
Relay → Push Notification Bridge

Keeps live subscriptions on a set of relays on behalf of registered devices and
forwards matching events to them through Web Push while their apps are closed.
"""

__version__ = "0.1.0"
