"""
Text-generation providers.

Network backends implementing the ``LLMProvider`` capability set.
"""
