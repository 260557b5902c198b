"""
Broker Bindings
===============

Concrete implementations of the broker protocols in circulator_stream.interfaces.
"""

from circulator_stream.broker.mqtt import MQTTBrokerConnection, subscription_filter

__all__ = ["MQTTBrokerConnection", "subscription_filter"]
