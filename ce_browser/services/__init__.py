"""
Services around the core engine: storage, persistence gateway, autosave
sink and the ExplorerService query surface.
"""
