"""Exceptions raised by the pipeline layer."""


class PipelineError(Exception):
    """Base class for every error raised by taskpipe itself."""
    pass


class UnsupportedTaskError(PipelineError, ValueError):
    """
    Raised when a task name (or task variant) has no registered configuration.

    The message lists the valid names so callers can correct the request.
    """
    pass


class ShapeMismatchError(PipelineError, ValueError):
    """
    Raised when a flat buffer cannot be reshaped into the requested dims.

    Indicates a contract breach between the model output and the shape the
    postprocessor expects.
    """

    @classmethod
    def for_shape(cls, size, dims) -> "ShapeMismatchError":
        shape = ", ".join(str(d) for d in dims)
        return cls(f"cannot reshape array of size {size} into shape ({shape})")


class NoAnswerFoundError(PipelineError, LookupError):
    """Raised when span extraction finds no span with start <= end."""
    pass


class MissingMaskTokenError(PipelineError, ValueError):
    """Raised when a fill-mask input does not contain the mask token."""
    pass


class ModelLoadError(PipelineError, RuntimeError):
    """Raised when the model backend is not importable."""
    pass


class InvalidInputError(PipelineError, ValueError):
    """Raised when inputs do not have the framing a task needs (e.g. QA without a context)."""
    pass
