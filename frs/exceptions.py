class FaceRecognitionError(Exception):
    """Base exception for the face recognition system."""


class CameraError(FaceRecognitionError):
    """Raised when webcam access is denied or the device is unavailable."""


class ModelLoadError(FaceRecognitionError):
    """Raised when detector, landmark or recognition models fail to load."""


class FaceEngineError(FaceRecognitionError):
    """Raised when face detection or embedding generation fails."""


class RegistrationError(FaceRecognitionError):
    """Raised when a registration request cannot be carried out."""


class NoFaceDetected(RegistrationError):
    """Raised when the captured frame holds no usable face."""


class RecognitionUnavailable(FaceRecognitionError):
    """Raised when recognition cannot start, e.g. nothing is registered yet."""


class StoreError(FaceRecognitionError):
    """Base class for descriptor store failures."""


class StoreReadFailed(StoreError):
    """Raised when registered faces cannot be loaded."""


class StoreWriteFailed(StoreError):
    """Raised when a face cannot be saved."""


class StoreDeleteFailed(StoreError):
    """Raised when a face cannot be deleted."""


class InvalidConfiguration(FaceRecognitionError):
    """Raised when database settings are malformed."""
