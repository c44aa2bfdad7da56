"""
Core Module
Interview session state machine: protocol events, transcript, usage and termination.
"""
