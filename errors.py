"""Machine faults raised by the VM core.

Every fault is fatal to the machine instance that raised it: the host decides
whether to halt, reset or reload.
"""


class MachineError(Exception):
    """Base class for faults of a single machine instance."""

    pass


class StackOverflowError(MachineError):
    """Raised on a call when the return stack already holds 16 entries."""

    pass


class StackUnderflowError(MachineError):
    """Raised on a return when the return stack is empty."""

    pass


class OutOfBoundsMemoryAccessError(MachineError):
    """Raised when PC, I or I+offset falls outside 0x000..0xFFF."""

    pass


class ProgramTooLargeError(MachineError):
    """Raised at load time when the program does not fit above 0x200."""

    pass


class UnknownOpcodeError(MachineError):
    """Raised when an instruction word matches no known operation."""

    pass
