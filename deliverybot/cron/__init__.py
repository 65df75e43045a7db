"""Daily scheduling for deliverybot background work."""
