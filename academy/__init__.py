__all__ = ['app', '__version__']

__version__ = '0.1.0'


def __getattr__(name: str):
    # Lazy so services and scripts can import the package without building the FastAPI app.
    if name == 'app':
        from academy.main import app

        return app
    raise AttributeError(name)
