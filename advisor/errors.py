from __future__ import annotations


class AdvisorError(Exception):
    pass


class ConfigurationError(AdvisorError):
    """A collaborator cannot be built because required settings are missing."""


class CollaboratorError(AdvisorError):
    """An external collaborator (generation, synthesis, telephony) failed."""


class GenerationError(CollaboratorError):
    pass


class EmptyReplyError(GenerationError):
    pass


class SynthesisError(CollaboratorError):
    pass


class EmptyAudioError(SynthesisError):
    pass


class TelephonyError(CollaboratorError):
    pass


class InvalidAddressError(TelephonyError):
    pass
