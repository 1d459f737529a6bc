from setuptools import setup, find_packages


setup(
    name="apkemit",
    version="0.1",
    packages=find_packages(include=["apkemit", "apkemit.*"]),
    description="Reproducible APK package assembly: data, control and signature members tied together by digest.",
    author="vercingetorx",
    python_requires=">=3.8",
    install_requires=[
        "pycryptodomex>=3.23.0",
    ],
    entry_points={
        "console_scripts": [
            "apkemit=apkemit.cli:main",
        ]
    },
)
