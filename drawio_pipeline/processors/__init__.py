from .renderer import DrawioRenderer, RenderResult, png_path_for

__all__ = ['DrawioRenderer', 'RenderResult', 'png_path_for']
