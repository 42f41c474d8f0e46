"""
Error taxonomy for Equation Ace.

Every error carries a short title and a user-facing message so the API can
turn it into the same notification the UI shows (title + description).
"""

from typing import Optional


class EquationAceError(Exception):
    """Base class for all errors that are surfaced to the user."""

    title = "Error"
    default_message = "An unexpected error occurred. Please try again."
    status_code = 500

    def __init__(self, message: Optional[str] = None, title: Optional[str] = None):
        self.message = message or self.default_message
        if title:
            self.title = title
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.title, "message": self.message}


class InvalidInputError(EquationAceError):
    """No input provided, or an unsupported image type. Raised before any remote call."""
    title = "No Input Provided"
    default_message = "Please upload an image, draw, or type in a problem."
    status_code = 400


class ExtractionError(EquationAceError):
    title = "Extraction Error"
    default_message = "Could not read text from the image. Please try again."
    status_code = 502


class NothingToSolveError(ExtractionError):
    """The image (or its OCR text) is empty."""
    title = "Nothing to solve"
    default_message = "Could not find any text in the selected area."
    status_code = 422


class SolveError(EquationAceError):
    title = "Solving Error"
    default_message = "The AI might not be able to solve this problem yet."
    status_code = 502


class PlotError(EquationAceError):
    """Only ever shown inside the graph widget."""
    title = "Plotting Error"
    default_message = "Could not plot the function. Invalid expression provided by AI."
    status_code = 422


class ConfigurationError(EquationAceError):
    title = "Not Configured"
    default_message = (
        "Sign-in and history are disabled because the server configuration is missing or invalid."
    )
    status_code = 503


class PersistenceError(EquationAceError):
    """Saving to history failed. Logged only; never blocks the solve result."""
    title = "History Error"
    default_message = "Could not save the result to your history."
    status_code = 500


class SignInError(EquationAceError):
    title = "Sign-in Error"
    default_message = "An unexpected error occurred. Please try again or check the console."
    status_code = 401


class UnauthorizedDomainError(SignInError):
    title = "Unauthorized Domain"
    default_message = (
        "This domain is not authorized for login. Please add it to the authorized "
        "domains list in the authentication settings."
    )
    status_code = 403


class NotSignedInError(EquationAceError):
    title = "Please Log In"
    default_message = "Log in to view your equation history and save new solutions."
    status_code = 401


class UnknownThreadError(InvalidInputError):
    title = "Not Found"
    default_message = "This solve session does not exist or has expired."
    status_code = 404
