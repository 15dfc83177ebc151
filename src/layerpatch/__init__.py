"""
layerpatch - keeps a layered game/mod installation in sync with remote patches.
"""
