"""Operator utilities for SQS dead-letter queues, Kinesis streams and account scans."""

__version__ = "0.1.0"
