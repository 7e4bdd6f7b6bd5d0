"""Curriculum package: static level -> module -> lesson structure."""

from .graph import CurriculumGraph, Lesson, Level, Module
from .loader import curriculum_from_dict, load_curriculum
