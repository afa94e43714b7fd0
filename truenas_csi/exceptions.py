from easypy.exceptions import TException


class Abort(Exception):
    @property
    def code(self):
        return self.args[0]

    @property
    def message(self):
        return self.args[1]


class NasError(TException):
    """Base for every failure talking to the NAS. Always retryable by the CO."""


class ApiError(NasError):
    template = "HTTP {response.status_code}: {response.text}"

    @property
    def status_code(self):
        return self.response.status_code


class UnexpectedResponse(NasError):
    template = "Unexpected response from NAS for {resource}: {reason}"


class CommandFailed(TException):
    template = "{cmd} failed with exit code {retcode}"


class MountFailed(CommandFailed):
    template = "Mounting {src} failed"


class DeviceTimeout(TException):
    template = "Timed out waiting for device {device} ({timeout}s)"


class ConfigurationError(TException):
    template = "Invalid controller configuration: {reason}"


class BackendNotFound(TException):
    template = "No {kind} found with name {name!r}"


class InternalError(TException):
    template = "{reason}"


class BuilderFailed(Exception):

    @property
    def message(self):
        return self.args[0]


class NameCollision(BuilderFailed):
    pass


class VolumeAlreadyExists(BuilderFailed):
    pass


class CapabilitiesChanged(BuilderFailed):
    pass
