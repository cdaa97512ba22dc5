import nox


@nox.session
def test(session):
    session.install(".[test]")
    session.run(
        "pytest",
        "--doctest-modules",
        "screenshot_compare.py",
        "randimg.py",
        "test_screenshot_compare.py",
        "test_randimg.py",
    )


@nox.session
def format(session):
    session.install("black")
    session.run("black", ".")
