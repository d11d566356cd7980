"""
Skill Arena - live coding races and proctored skill assessments
"""
__version__ = "1.0.0"
