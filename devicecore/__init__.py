"""
devicecore - edge device-service runtime.
"""

__version__ = "0.1.0"
__logo__ = "📟"
