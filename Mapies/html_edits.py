# Mapies/html_edits.py

def insert_watermark(page, label="Made with Mapies", href="https://mapies.web.app"):
    """
    Appends the free-plan badge to a Folium-rendered page and returns the
    updated HTML.

    Parameters:
    - page (str): The rendered HTML.
    - label (str): Badge text.
    - href (str): Where the badge links to.
    """
    watermark = '''
    <div id="mapies-watermark">
      <a href="{href}" target="_blank" rel="noopener">{label}</a>
    </div>

    <style>
      #mapies-watermark {{
        position: absolute;
        bottom: 2vh;
        left: 2vw;
        z-index: 9999;
      }}

      #mapies-watermark a {{
        background-color: white;
        padding: 6px 10px;
        border-radius: 8px;
        font-size: 12px;
        font-weight: bold;
        color: #3B82F6;
        text-decoration: none;
        box-shadow: 0 2px 6px rgba(0, 0, 0, 0.2);
      }}
    </style>
    '''.format(href=href, label=label)

    # Avoid duplicating if already inserted
    if '<div id="mapies-watermark">' in page:
        return page
    return page.replace('</body>', watermark + '\n</body>')
