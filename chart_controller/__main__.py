"""Run the chart-controller command line tool."""

from chart_controller.tool.chart_controller import main

if __name__ == "__main__":
    main()
