"""
Discord-facing layer: cogs registered on the ``discord.Bot``.
"""
