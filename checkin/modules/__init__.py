# QR Check-in - Modules Package
"""
Core attendance session modules: token codec, session generator,
attendance validator and the attendance stores.
"""
