"""
Progress/result stream encoding and decoding.
"""

from output.stream import EventType, NDJSONDecoder, ScanEvent, iter_ndjson

__all__ = ["EventType", "ScanEvent", "NDJSONDecoder", "iter_ndjson"]
