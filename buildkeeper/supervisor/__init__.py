"""
The Supervisor package.
Keeps a web application built and its single service process running.

This package contains the central Supervisor class and its helper modules,
which together handle change detection, installing, building, starting,
stopping and probing the supervised service.
"""
from .errors import StepResult
from .persistence import ProcessGroupHandle
from .supervisor import Supervisor

__all__ = ['Supervisor', 'StepResult', 'ProcessGroupHandle']
