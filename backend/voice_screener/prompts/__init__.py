"""
Prompt templates for the interviewer and the transcript analyzer.
"""
