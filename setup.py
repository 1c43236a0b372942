from setuptools import setup, find_packages

setup(
    name="VoiceScribe",
    version="1.0",
    package_dir={"": "src"},
    packages=find_packages("src"),
    install_requires=[
        "numpy",
        "sounddevice",
        "webrtcvad-wheels",
        "setuptools",
        "soundfile",
        "librosa",
        "pydub",
        "audioop-lts; python_version>='3.13'",
        "torch",
        "transformers",
        "peft",
        "fastapi",
        "pydantic>=2",
        "uvicorn",
        "python-dotenv",
        "python-multipart",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
    entry_points={
        "console_scripts": [
            "voicescribe=voicescribe.main:main",
        ],
    },
    python_requires=">=3.9",
)
