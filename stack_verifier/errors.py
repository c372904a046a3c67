"""
Base exception for the serverless stack verifier
"""


class StackVerifierError(Exception):
    """Base exception for stack verifier errors"""
    pass
