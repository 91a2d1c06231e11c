"""Collaborator clients: research service and synthesis model"""
