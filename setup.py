from setuptools import setup


setup(
    name="m3u8dl",
    version="1.0.0",
    description="Async downloader of HLS (m3u8) streams, with AES-128 decryption",
    python_requires=">=3.10",
    py_modules=[
        'async_all',
        'asyncdl',
        'asynchlsdownloader',
        'hlsplaylist',
        'hlsresolver',
        'supportlogging',
        'utils',
    ],
    install_requires=[
        "aiofiles>=23.1",
        "asgiref>=3.5",
        "backoff>=2.2",
        "codetiming>=1.4",
        "httpx>=0.26",
        "m3u8>=3.0",
        "pycryptodomex>=3.15",
        "tabulate>=0.9",
        "uvloop>=0.18",
    ],
    extras_require={"test": ["pytest>=7"]},
    entry_points={"console_scripts": ["m3u8dl=async_all:main"]}
)
