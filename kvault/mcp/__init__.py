"""
kvault.mcp — Model Context Protocol server for the Knowledge Vault.

Requires the optional ``mcp`` dependency (pip install kvault[mcp]).
"""
