"""
Module entry point for: python -m quizbank

    python -m quizbank serve [options]
    python -m quizbank normalize <quiz.json>
    python -m quizbank reconcile
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
