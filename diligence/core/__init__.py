"""Core orchestration: job states, retries, error handling, state machine"""
