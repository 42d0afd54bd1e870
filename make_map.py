import html

import folium
import numpy as np

from Mapies.plotting_functions import add_pins
from Mapies.utility_functions import load_from_fb_format


def generate_map(rows, title=None):
    """Renders the markers to a standalone Leaflet page and returns its HTML."""
    markers = load_from_fb_format(rows)
    coords = markers.get_all_coords()

    if not coords:
        m = folium.Map(location=(30, 10), zoom_start=3)

    else:
        # Centre on the mean of all visible markers
        start = np.mean(coords, axis=0)
        m = folium.Map(location=start.tolist(), zoom_start=8 if len(coords) > 1 else 12)
        add_pins(m, markers)

    if title:
        m.get_root().header.add_child(folium.Element(f"<title>{html.escape(title)}</title>"))

    return m.get_root().render()
