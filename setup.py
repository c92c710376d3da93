"""Setup script for Map Rooms."""

from setuptools import setup

# Read requirements
with open("requirements.txt") as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

# Read README for long description
with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="map-rooms",
    version="1.0.0",
    description="Virtual tabletop rooms: shared battle maps with grid overlay and live presence",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["map_view", "room_store", "room_server", "map_client", "character_sheet", "launcher"],
    install_requires=requirements,
    extras_require={
        "test": ["pytest", "httpx"],
    },
    python_requires=">=3.9",
    entry_points={
        "console_scripts": [
            "map-rooms-server=room_server:main",
            "map-rooms-client=map_client:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "Topic :: Games/Entertainment :: Role-Playing",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
    ],
    keywords="dnd tabletop rpg battle map grid vtt",
)
