"""
AI Batch Guard.

Admission control, retry, and progress tracking for batch AI image generation.
"""
