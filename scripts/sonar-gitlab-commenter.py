#!/usr/bin/env python3

"""Publish SonarQube issues as GitLab merge request discussions and a summary note."""

from sonar_gitlab.commenter import main

if __name__ == "__main__":
    raise SystemExit(main())
