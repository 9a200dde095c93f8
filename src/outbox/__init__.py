"""
Outbox Module
=============

Transactional outbox for ticket notifications: events are written with the
ticket change that caused them and delivered asynchronously with retries.
"""
