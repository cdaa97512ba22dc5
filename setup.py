import setuptools

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setuptools.setup(
    name="screenshot-compare",
    version="0.0.1",
    author="Laurence de Bruxelles",
    description="Quantify the difference between two screenshots",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["screenshot_compare", "randimg"],
    entry_points={
        "console_scripts": [
            "screenshot-compare=screenshot_compare:main",
            "randimg=randimg:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
    ],
    install_requires=["Pillow", "numpy", "typing_extensions"],
    extras_require={"test": ["pytest", "sh>=2"]},
    python_requires=">=3.8",
)
