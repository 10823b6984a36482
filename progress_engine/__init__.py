"""
Progress Engine.

Learning progress tracking, mastery evaluation and in-session adaptive
difficulty for course -> lesson -> section content.

Entry point: progress_engine.engine.LearningProgressEngine
"""

__version__ = "1.0.0"
