"""MCP tool registration for the entity asset store"""
