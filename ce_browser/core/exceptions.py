class CeBrowserError(Exception):
    """Base exception for all ce_browser errors"""
    pass

class ConfigError(CeBrowserError):
    """Invalid or inconsistent preferences.json"""
    pass

class CellIndexError(CeBrowserError, IndexError):
    """
    One or more cell indices fall outside 1..N of the loaded dataset
    """
    pass

class PersistenceError(CeBrowserError):
    """Reading, writing or backing up a session record failed"""
    pass

class StateError(CeBrowserError):
    """
    An operation is not possible in the current classification state
    (e.g. saving without a persistence gateway)
    """
    pass
