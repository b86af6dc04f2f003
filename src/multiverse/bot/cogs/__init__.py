"""
Cogs package for the Multiverse relay bot.
Each module defines a cog class and a setup function that registers it with
the bot and the shared MultiverseService.
The cogs are loaded explicitly in main.py to avoid dynamic imports.
"""
