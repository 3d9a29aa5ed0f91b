"""Run the gitops-bootstrap command line tool with `python -m gitops_bootstrap`."""

from gitops_bootstrap.tool.gitops_bootstrap import main

if __name__ == "__main__":
    main()
