"""Intake Agent Module"""
from .graph import IntakePipeline, IntakeState, build_intake_graph, group_by_delivery

__all__ = ["IntakePipeline", "IntakeState", "build_intake_graph", "group_by_delivery"]
