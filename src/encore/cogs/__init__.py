"""Cog extensions loaded by :func:`encore.utils.load_all_cogs`."""
