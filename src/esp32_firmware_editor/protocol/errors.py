"""Exceptions raised by the bootloader transport."""


class LoaderError(Exception):
    """Base exception for bootloader transport errors"""
    pass


class LoaderTimeoutError(LoaderError):
    """Device did not answer in time"""
    pass


class LoaderProtocolError(LoaderError):
    """Device answered with an error status or an unexpected reply"""
    pass


class IntegrityError(LoaderProtocolError):
    """MD5 of transferred data does not match the device"""
    pass


class LoaderNotConnectedError(LoaderError):
    """Port is closed, lost, or could not be opened"""
    pass


class StubLoaderError(LoaderError):
    """Stub loader could not be uploaded or did not start"""
    pass
