from foreman.machines.base import CancelToken, Machine, MachineResult, RunContext, define_machine

__all__ = ["CancelToken", "Machine", "MachineResult", "RunContext", "define_machine"]
