from .slack import FailureNotifier, NullNotificationSink, SlackNotificationSink, sink_from_config

__all__ = ['FailureNotifier', 'NullNotificationSink', 'SlackNotificationSink', 'sink_from_config']
