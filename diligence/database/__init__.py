"""Persistence layer: ORM models, sessions, repositories"""
