"""
Inbound webhooks
"""
