"""Process-wide configuration: settings and logging"""
