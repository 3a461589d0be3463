class VoiceAssistantError(Exception):
    """Base class for voice assistant errors.

    Every error carries a short, speakable ``user_message`` that the session
    copies into ``Session.last_error`` when the failure reaches the user.
    """

    user_message = "Something went wrong. Try again?"

    def __init__(self, detail: str = "", user_message: str | None = None):
        super().__init__(detail or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class PermissionDenied(VoiceAssistantError):
    user_message = "Microphone permission is needed for voice commands."


class CaptureUnavailable(VoiceAssistantError):
    user_message = "Voice isn't available on this device."


class RateLimited(VoiceAssistantError):
    TOO_SOON = "too soon"
    QUOTA_EXHAUSTED = "quota exhausted"

    _MESSAGES = {
        TOO_SOON: "Give me a moment before your next question.",
        QUOTA_EXHAUSTED: "I've reached my daily limit. I'll be back tomorrow, check the app for now!",
    }

    def __init__(self, reason: str):
        super().__init__(reason, user_message=self._MESSAGES.get(reason))
        self.reason = reason


class ProviderFailure(VoiceAssistantError):
    PRIMARY = "primary"
    SECONDARY = "secondary"

    user_message = "I'm having trouble right now. You can still use the app normally!"

    def __init__(self, source: str, detail: str = ""):
        super().__init__(f"{source} provider failed: {detail}" if detail else f"{source} provider failed")
        self.source = source


class SynthesisFailure(VoiceAssistantError):
    user_message = "I couldn't speak that answer out loud."


class ToolExecutionFailure(VoiceAssistantError):
    user_message = "Couldn't complete that. Try again?"

    def __init__(self, tool_name: str, detail: str = ""):
        super().__init__(f"{tool_name}: {detail}" if detail else tool_name)
        self.tool_name = tool_name


class ConfirmationRequired(VoiceAssistantError):
    user_message = "Please confirm that action first."

    def __init__(self, tool_name: str):
        super().__init__(f"{tool_name} requires confirmation")
        self.tool_name = tool_name
