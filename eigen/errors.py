class EigenError(Exception):
    """Base error; the message is always safe to show to a user."""


class TransportError(EigenError):
    pass


class ProtocolError(EigenError):
    pass


class ResourceError(EigenError):
    pass


class ServerSpawnError(ResourceError):
    pass


class ServerStartupTimeout(ResourceError):
    def __init__(self, message: str = "Server startup timeout"):
        super().__init__(message)


class DownloadError(ResourceError):
    pass


class PolicyError(EigenError):
    pass


class UnknownModel(PolicyError):
    pass


class ActiveModelDeletion(PolicyError):
    def __init__(self, message: str = "Cannot delete the currently active model"):
        super().__init__(message)


class DownloadInProgress(PolicyError):
    def __init__(self, message: str = "Model is already being downloaded"):
        super().__init__(message)


class DownloadCancelled(EigenError):
    def __init__(self, message: str = "Download cancelled"):
        super().__init__(message)
