"""
Billing package - prepaid credits, subscriptions and payments.

Tenants buy credits through a payment gateway (card or PIX), spend them
directly or through time-boxed reservations, and pay recurring plan fees
out of the same balance. Time-based transitions run from a durable queue
of scheduled actions.
"""
