"""
camsignal - WebRTC signaling and session orchestration for camera feeds
"""

__version__ = "1.0.0"
