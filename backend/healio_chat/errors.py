class HealioChatError(Exception):
    """Base class for errors raised by the chat layer."""


class StoreWriteError(HealioChatError):
    """An upsert or append against the conversation store failed."""

    def __init__(self, message: str, conversation_id: str = None):
        super().__init__(message)
        self.conversation_id = conversation_id


class StoreSubscriptionError(HealioChatError):
    """The live message subscription lost its transport."""

    def __init__(self, message: str, conversation_id: str = None):
        super().__init__(message)
        self.conversation_id = conversation_id


class CipherDecryptError(HealioChatError):
    pass


class CallerContractError(HealioChatError):
    pass
