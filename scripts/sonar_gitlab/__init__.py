"""SonarQube -> GitLab merge request commenter."""

__version__ = "1.0.0"
