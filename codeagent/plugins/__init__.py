"""Plugins shipped with codeagent."""
