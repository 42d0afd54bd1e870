import html

import folium

from Mapies.utility_functions import format_address_for_popup


def pin_html(color, icon=''):
    return f"""
    <div style="
        position: relative;
        width: 30px;
        height: 30px;
        background: {color};
        color: white;
        border-radius: 50% 50% 50% 0;
        transform: rotate(-45deg);
        text-align: center;
        line-height: 30px;
    ">
        <div style="
            transform: rotate(45deg);
            font-size: 14px;
        ">
            {icon}
        </div>
    </div>
    """


def popup_for_marker(name, address):
    html_lines = [f"<b>{html.escape(name or '')}</b>"]
    short = format_address_for_popup(address)
    if short:
        html_lines.append(html.escape(short))
    return "<br>".join(html_lines)


def add_pins(m, markers):
    for marker in markers.visible():
        category = marker.business_category
        folium.Marker(
            location=[float(marker.lat), float(marker.lng)],
            popup=folium.Popup(popup_for_marker(marker.name, marker.address), max_width=300),
            tooltip=html.escape(marker.name or ''),
            icon=folium.DivIcon(
                html=pin_html(category.get('color', '#3B82F6'), html.escape(category.get('icon', ''))),
                icon_size=(30, 30),
                icon_anchor=(15, 30),
            ),
        ).add_to(m)
